from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
import posixpath
import threading

from savant.platform import PlatformClient


class FileNotFoundInTreeError(FileNotFoundError):
    pass


def normalize_path(path: str) -> str:
    """Repository-relative form of ``path``; the repository root is ``""``.

    Raises ``ValueError`` for paths that escape the repository.
    """
    stripped = path.strip().lstrip("/")
    if not stripped or stripped == ".":
        return ""
    normalized = posixpath.normpath(stripped)
    if normalized == "." or normalized == "":
        return ""
    if normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"path escapes the repository: {path!r}")
    return normalized


def _parent_dirs(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]


def _child_name(directory: str, path: str) -> str | None:
    """Entry name of ``path`` directly under ``directory``, with ``/`` for subdirectories."""
    prefix = f"{directory}/" if directory else ""
    if not path.startswith(prefix) or path == directory:
        return None
    rest = path[len(prefix) :]
    if not rest:
        return None
    head, sep, _ = rest.partition("/")
    return f"{head}/" if sep else head


def _join(directory: str, name: str) -> str:
    return f"{directory}/{name}" if directory else name


class ReadOnlyFilesystem(ABC):
    @abstractmethod
    def read(self, path: str) -> str:
        """Content of a file; raises ``FileNotFoundInTreeError`` when absent."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """True for files, false for directories and missing paths."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """True when ``path`` is a directory; the root always is."""

    @abstractmethod
    def list_dir(self, path: str) -> tuple[str, ...]:
        """Sorted entry names directly under ``path``; subdirectories end in ``/``."""


class InMemoryFilesystem(ReadOnlyFilesystem):
    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files = {normalize_path(path): content for path, content in (files or {}).items()}
        self._dirs = {""}
        for path in self._files:
            self._dirs.update(_parent_dirs(path))

    def read(self, path: str) -> str:
        key = normalize_path(path)
        if key not in self._files:
            raise FileNotFoundInTreeError(path)
        return self._files[key]

    def file_exists(self, path: str) -> bool:
        return normalize_path(path) in self._files

    def is_dir(self, path: str) -> bool:
        return normalize_path(path) in self._dirs

    def list_dir(self, path: str) -> tuple[str, ...]:
        directory = normalize_path(path)
        if directory not in self._dirs:
            raise FileNotFoundInTreeError(path)
        names = {
            name
            for candidate in [*self._files, *(f"{d}/" for d in self._dirs if d)]
            if (name := _child_name(directory, candidate)) is not None
        }
        return tuple(sorted(names))


class GitHubTreeFilesystem(ReadOnlyFilesystem):
    """Repository contents at one commit, loaded lazily through the platform API."""

    def __init__(self, platform: PlatformClient, commit_sha: str) -> None:
        self._platform = platform
        self._commit_sha = commit_sha
        self._lock = threading.Lock()
        self._blob_shas: dict[str, str] | None = None
        self._dirs: set[str] = {""}
        self._contents: dict[str, str] = {}

    @property
    def commit_sha(self) -> str:
        return self._commit_sha

    def _index(self) -> dict[str, str]:
        with self._lock:
            if self._blob_shas is None:
                blob_shas: dict[str, str] = {}
                for entry in self._platform.list_tree(self._commit_sha):
                    if entry.kind == "blob":
                        blob_shas[entry.path] = entry.sha
                        self._dirs.update(_parent_dirs(entry.path))
                    else:
                        self._dirs.add(entry.path)
                self._blob_shas = blob_shas
            return self._blob_shas

    def read(self, path: str) -> str:
        key = normalize_path(path)
        blob_sha = self._index().get(key)
        if blob_sha is None:
            raise FileNotFoundInTreeError(path)
        with self._lock:
            cached = self._contents.get(key)
        if cached is not None:
            return cached
        content = self._platform.get_blob(blob_sha)
        with self._lock:
            self._contents[key] = content
        return content

    def file_exists(self, path: str) -> bool:
        return normalize_path(path) in self._index()

    def is_dir(self, path: str) -> bool:
        self._index()
        return normalize_path(path) in self._dirs

    def list_dir(self, path: str) -> tuple[str, ...]:
        directory = normalize_path(path)
        files = self._index()
        if directory not in self._dirs:
            raise FileNotFoundInTreeError(path)
        names = {
            name
            for candidate in [*files, *(f"{d}/" for d in self._dirs if d)]
            if (name := _child_name(directory, candidate)) is not None
        }
        return tuple(sorted(names))


@dataclass(frozen=True)
class Changelist:
    modified: Mapping[str, str] = field(default_factory=dict)
    deleted: frozenset[str] = frozenset()

    def is_empty(self) -> bool:
        return not self.modified and not self.deleted

    def is_modified(self, path: str) -> bool:
        return normalize_path(path) in self.modified

    def is_deleted(self, path: str) -> bool:
        return normalize_path(path) in self.deleted

    def paths(self) -> tuple[str, ...]:
        return tuple(sorted([*self.modified, *self.deleted]))


class StagingFilesystem(ReadOnlyFilesystem):
    """Copy-on-write overlay: writes and deletes stay in memory over a read-only base."""

    def __init__(self, base: ReadOnlyFilesystem) -> None:
        self._base = base
        self._working_tree: dict[str, str] = {}
        self._deleted_files: set[str] = set()

    def read(self, path: str) -> str:
        key = normalize_path(path)
        if key in self._deleted_files:
            raise FileNotFoundInTreeError(path)
        if key in self._working_tree:
            return self._working_tree[key]
        return self._base.read(key)

    def write(self, path: str, content: str) -> None:
        key = normalize_path(path)
        if not key:
            raise ValueError("cannot write to the repository root")
        if self.is_dir(key):
            raise IsADirectoryError(path)
        self._deleted_files.discard(key)
        self._working_tree[key] = content

    def delete(self, path: str) -> None:
        key = normalize_path(path)
        if not self.file_exists(key):
            raise FileNotFoundInTreeError(path)
        self._working_tree.pop(key, None)
        if self._base.file_exists(key):
            self._deleted_files.add(key)

    def file_exists(self, path: str) -> bool:
        key = normalize_path(path)
        if key in self._deleted_files:
            return False
        return key in self._working_tree or self._base.file_exists(key)

    def is_dir(self, path: str) -> bool:
        key = normalize_path(path)
        return key == "" or self._has_visible_files(key)

    def list_dir(self, path: str) -> tuple[str, ...]:
        directory = normalize_path(path)
        if not self.is_dir(directory):
            raise FileNotFoundInTreeError(path)
        names: set[str] = set()
        if self._base.is_dir(directory):
            for name in self._base.list_dir(directory):
                child = _join(directory, name.rstrip("/"))
                if name.endswith("/"):
                    if self._has_visible_files(child):
                        names.add(name)
                elif child not in self._deleted_files:
                    names.add(name)
        for written in self._working_tree:
            name = _child_name(directory, written)
            if name is not None:
                names.add(name)
        return tuple(sorted(names))

    def _has_visible_files(self, directory: str) -> bool:
        # A directory whose every file was deleted no longer exists.
        prefix = f"{directory}/"
        if any(written.startswith(prefix) for written in self._working_tree):
            return True
        if not self._base.is_dir(directory):
            return False
        for name in self._base.list_dir(directory):
            child = _join(directory, name.rstrip("/"))
            if name.endswith("/"):
                if self._has_visible_files(child):
                    return True
            elif child not in self._deleted_files:
                return True
        return False

    def changelist(self) -> Changelist:
        return Changelist(
            modified=dict(self._working_tree),
            deleted=frozenset(self._deleted_files),
        )
