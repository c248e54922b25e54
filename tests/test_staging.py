from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from savant.staging import (
    Changelist,
    FileNotFoundInTreeError,
    GitHubTreeFilesystem,
    InMemoryFilesystem,
    StagingFilesystem,
    normalize_path,
)

from fakes import FakePlatform


def _staging() -> StagingFilesystem:
    return StagingFilesystem(
        InMemoryFilesystem(
            {
                "README.md": "# readme\n",
                "src/app.py": "print('hi')\n",
                "src/util/helpers.py": "X = 1\n",
            }
        )
    )


def test_normalize_path_strips_and_rejects_escapes() -> None:
    assert normalize_path("/src/app.py") == "src/app.py"
    assert normalize_path("src//util/./helpers.py") == "src/util/helpers.py"
    assert normalize_path("") == ""
    assert normalize_path("/") == ""
    assert normalize_path(".") == ""
    with pytest.raises(ValueError, match="escapes"):
        normalize_path("../etc/passwd")
    with pytest.raises(ValueError, match="escapes"):
        normalize_path("src/../../x")


def test_reads_see_base_until_written() -> None:
    fs = _staging()
    assert fs.read("src/app.py") == "print('hi')\n"

    fs.write("src/app.py", "print('bye')\n")

    assert fs.read("src/app.py") == "print('bye')\n"
    assert fs.changelist() == Changelist(modified={"src/app.py": "print('bye')\n"})


def test_delete_hides_file_and_records_deletion() -> None:
    fs = _staging()
    fs.delete("README.md")

    assert not fs.file_exists("README.md")
    with pytest.raises(FileNotFoundInTreeError):
        fs.read("README.md")
    assert fs.changelist().is_deleted("README.md")
    assert "README.md" not in fs.list_dir("")


def test_write_after_delete_restores_file() -> None:
    fs = _staging()
    fs.delete("README.md")
    fs.write("README.md", "new\n")

    changelist = fs.changelist()
    assert not changelist.is_deleted("README.md")
    assert changelist.is_modified("README.md")
    assert fs.read("README.md") == "new\n"


def test_deleting_a_new_file_leaves_no_trace() -> None:
    fs = _staging()
    fs.write("docs/guide.md", "guide")
    fs.delete("docs/guide.md")

    assert fs.changelist().is_empty()
    assert not fs.is_dir("docs")


def test_delete_missing_file_raises() -> None:
    fs = _staging()
    with pytest.raises(FileNotFoundInTreeError):
        fs.delete("nope.txt")


def test_write_to_directory_is_rejected() -> None:
    fs = _staging()
    with pytest.raises(IsADirectoryError):
        fs.write("src", "oops")
    with pytest.raises(ValueError):
        fs.write("/", "oops")


def test_list_dir_merges_overlay_and_base() -> None:
    fs = _staging()
    fs.write("src/new_module.py", "")
    fs.write("src/pkg/__init__.py", "")
    fs.delete("src/app.py")

    assert fs.list_dir("src") == ("new_module.py", "pkg/", "util/")
    assert fs.list_dir("") == ("README.md", "src/")
    assert fs.is_dir("src/pkg")
    with pytest.raises(FileNotFoundInTreeError):
        fs.list_dir("missing")


def test_base_filesystems_list_nested_directories() -> None:
    files = {"src/app.py": "", "src/util/io.py": "", "src/util/deep/x.py": ""}
    platform = FakePlatform(files=files)

    for base in (InMemoryFilesystem(files), GitHubTreeFilesystem(platform, platform.refs["main"])):
        assert base.list_dir("src") == ("app.py", "util/")
        assert base.list_dir("src/util") == ("deep/", "io.py")
        assert base.list_dir("src/util/deep") == ("x.py",)
        assert base.list_dir("") == ("src/",)


def test_directory_disappears_when_its_files_are_deleted() -> None:
    fs = _staging()
    fs.delete("src/util/helpers.py")

    assert fs.list_dir("src") == ("app.py",)
    assert not fs.is_dir("src/util")
    with pytest.raises(FileNotFoundInTreeError):
        fs.list_dir("src/util")


def test_changelist_is_a_snapshot() -> None:
    fs = _staging()
    fs.write("a.txt", "1")
    before = fs.changelist()
    fs.write("a.txt", "2")

    assert before.modified == {"a.txt": "1"}
    assert fs.changelist().modified == {"a.txt": "2"}
    assert before.paths() == ("a.txt",)


def test_github_tree_filesystem_loads_lazily_and_caches_blobs() -> None:
    platform = FakePlatform(files={"README.md": "hello", "src/a.py": "A = 1\n"})
    commit_sha = platform.refs["main"]
    calls: list[str] = []
    original_get_blob = platform.get_blob

    def counting_get_blob(blob_sha: str) -> str:
        calls.append(blob_sha)
        return original_get_blob(blob_sha)

    platform.get_blob = counting_get_blob  # type: ignore[method-assign]
    fs = GitHubTreeFilesystem(platform, commit_sha)

    assert fs.commit_sha == commit_sha
    assert fs.is_dir("src")
    assert fs.list_dir("") == ("README.md", "src/")
    assert fs.read("src/a.py") == "A = 1\n"
    assert fs.read("src/a.py") == "A = 1\n"
    assert len(calls) == 1
    assert not fs.file_exists("src")
    with pytest.raises(FileNotFoundInTreeError):
        fs.read("missing.py")


_names = st.text(alphabet="abcxyz", min_size=1, max_size=4)
_paths = st.lists(_names, min_size=1, max_size=3).map("/".join)


@given(
    st.lists(
        st.tuples(st.sampled_from(["write", "delete"]), _paths, st.text(max_size=5)),
        max_size=25,
    )
)
def test_reads_match_a_plain_dict_model(operations: list[tuple[str, str, str]]) -> None:
    base = {"abc": "base-a", "x/y": "base-xy"}
    fs = StagingFilesystem(InMemoryFilesystem(base))
    model = dict(base)

    for op, path, content in operations:
        if op == "write":
            try:
                fs.write(path, content)
            except IsADirectoryError:
                continue
            model[path] = content
        elif path in model:
            fs.delete(path)
            del model[path]

    for path in set(model) | set(base):
        assert fs.file_exists(path) == (path in model)
        if path in model:
            assert fs.read(path) == model[path]

    changelist = fs.changelist()
    assert changelist.deleted == frozenset(path for path in base if path not in model)
    for path, content in changelist.modified.items():
        assert model[path] == content

    directories = {""}
    for path in model:
        parts = path.split("/")
        directories.update("/".join(parts[:index]) for index in range(1, len(parts)))
    for directory in directories:
        prefix = f"{directory}/" if directory else ""
        expected: set[str] = set()
        for path in model:
            if path.startswith(prefix):
                head, sep, _ = path[len(prefix) :].partition("/")
                expected.add(f"{head}/" if sep else head)
        assert fs.is_dir(directory)
        assert fs.list_dir(directory) == tuple(sorted(expected))
