from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import threading

from savant.models import TreeChange
from savant.observability import log_event
from savant.platform import PlatformClient
from savant.staging import Changelist, GitHubTreeFilesystem, StagingFilesystem
from savant.validation import ValidationHandle, ValidationResult, WorkflowValidator


LOGGER = logging.getLogger("savant.workspace")


class WorkspaceError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommitRef:
    sha: str
    branch: str


class ValidationWorkspace(ABC):
    """Staged edits for one task attempt plus the remote validation of them."""

    @property
    @abstractmethod
    def filesystem(self) -> StagingFilesystem:
        """Overlay the edits are staged on; reads see staged state."""

    @property
    @abstractmethod
    def review_branch(self) -> str:
        """Branch the final commit lands on."""

    def stage(self, path: str, content: str) -> None:
        self.filesystem.write(path, content)

    def delete(self, path: str) -> None:
        self.filesystem.delete(path)

    def changelist(self) -> Changelist:
        return self.filesystem.changelist()

    @abstractmethod
    def trigger_validation(self, commit_message: str) -> ValidationHandle:
        """Push the current changelist somewhere CI can see it and start validation."""

    @abstractmethod
    def await_validation(self, handle: ValidationHandle, cancel: threading.Event) -> ValidationResult:
        """Block until the validation run reaches a verdict or times out."""

    @abstractmethod
    def is_validated(self) -> bool:
        """True when the current changelist is exactly the last one that passed."""

    @abstractmethod
    def commit(self, message: str) -> CommitRef:
        """Land the changelist on the review branch as a single commit."""


class RemoteValidationWorkspace(ValidationWorkspace):
    """GitHub-backed workspace.

    Edits are staged over the review branch when it already exists, otherwise
    over the target branch. Validation force-pushes a throwaway commit to the
    work branch; the review branch only ever receives the final commit.
    """

    def __init__(
        self,
        platform: PlatformClient,
        *,
        validator: WorkflowValidator | None,
        target_branch: str,
        review_branch: str,
        work_branch: str,
    ) -> None:
        self._platform = platform
        self._validator = validator
        self._target_branch = target_branch
        self._review_branch = review_branch
        self._work_branch = work_branch

        review_head = platform.get_branch_head(review_branch)
        base_sha = review_head or platform.get_branch_head(target_branch)
        if base_sha is None:
            raise WorkspaceError(f"target branch {target_branch} does not exist")
        self._base_sha = base_sha
        self._filesystem = StagingFilesystem(GitHubTreeFilesystem(platform, base_sha))
        self._pending: tuple[ValidationHandle, Changelist] | None = None
        self._validated: Changelist | None = None
        log_event(
            LOGGER,
            "workspace_opened",
            target_branch=target_branch,
            review_branch=review_branch,
            base_sha=base_sha,
            review_branch_exists=review_head is not None,
        )

    @property
    def filesystem(self) -> StagingFilesystem:
        return self._filesystem

    @property
    def review_branch(self) -> str:
        return self._review_branch

    @property
    def base_sha(self) -> str:
        return self._base_sha

    def trigger_validation(self, commit_message: str) -> ValidationHandle:
        changelist = self.changelist()
        if self._validator is None:
            handle = ValidationHandle(branch=self._work_branch, head_sha="")
            self._pending = (handle, changelist)
            return handle
        commit_sha = self._create_commit(changelist, commit_message)
        self._platform.set_branch_head(self._work_branch, commit_sha, force=True)
        handle = self._validator.trigger(self._work_branch, commit_sha)
        self._pending = (handle, changelist)
        return handle

    def await_validation(self, handle: ValidationHandle, cancel: threading.Event) -> ValidationResult:
        if self._pending is None or self._pending[0] != handle:
            raise WorkspaceError("no outstanding validation for this handle")
        changelist = self._pending[1]
        self._pending = None
        if self._validator is None:
            result = ValidationResult(
                passed=True,
                diagnostic="No validation workflow is configured; changes were not checked.",
            )
        else:
            result = self._validator.await_result(handle, cancel)
        if result.passed:
            self._validated = changelist
        return result

    def is_validated(self) -> bool:
        if self._validator is None:
            return True
        return self._validated is not None and self._validated == self.changelist()

    def commit(self, message: str) -> CommitRef:
        changelist = self.changelist()
        if changelist.is_empty():
            raise WorkspaceError("nothing to commit")
        commit_sha = self._create_commit(changelist, message)
        self._platform.set_branch_head(self._review_branch, commit_sha, force=False)
        log_event(
            LOGGER,
            "github_commit_created",
            branch=self._review_branch,
            commit_sha=commit_sha,
            modified_count=len(changelist.modified),
            deleted_count=len(changelist.deleted),
        )
        return CommitRef(sha=commit_sha, branch=self._review_branch)

    def _create_commit(self, changelist: Changelist, message: str) -> str:
        changes: list[TreeChange] = []
        for path in sorted(changelist.modified):
            blob_sha = self._platform.create_blob(changelist.modified[path])
            changes.append(TreeChange(path=path, blob_sha=blob_sha))
        for path in sorted(changelist.deleted):
            changes.append(TreeChange(path=path, blob_sha=None))
        tree_sha = self._platform.create_tree(self._base_sha, tuple(changes))
        return self._platform.create_commit(message, tree_sha, (self._base_sha,))
