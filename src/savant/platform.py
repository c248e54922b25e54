from __future__ import annotations

from abc import ABC, abstractmethod

from savant.models import (
    CommentKind,
    Issue,
    IssueComment,
    LabelEvent,
    PullRequest,
    PullRequestReview,
    PullRequestSnapshot,
    RepositoryInfo,
    ReviewComment,
    TreeChange,
    TreeEntry,
    WorkflowRunSnapshot,
)


class PlatformClient(ABC):
    """Operations the engine needs from the code-hosting platform, scoped to one repository."""

    owner: str
    name: str

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @abstractmethod
    def search_assigned_issues(self, assignee: str) -> list[Issue]:
        """Open issues in this repository assigned to ``assignee``."""

    @abstractmethod
    def get_issue(self, issue_number: int) -> Issue:
        """Fetch one issue with its current labels."""

    @abstractmethod
    def list_issue_labels(self, issue_number: int) -> tuple[str, ...]:
        """Current label names, read fresh from the platform."""

    @abstractmethod
    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        """Add labels to an issue; labels already present are left alone."""

    @abstractmethod
    def remove_label(self, issue_number: int, label: str) -> bool:
        """Remove a label. Returns False when the label was not on the issue."""

    @abstractmethod
    def ensure_label(self, name: str, color: str, description: str) -> None:
        """Create a repository label when it does not exist yet."""

    @abstractmethod
    def list_label_events(self, issue_number: int) -> list[LabelEvent]:
        """``labeled`` events of an issue, oldest first."""

    @abstractmethod
    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        """Conversation comments on an issue or pull request."""

    @abstractmethod
    def post_issue_comment(self, issue_number: int, body: str) -> None:
        """Post a comment on an issue or pull request conversation."""

    @abstractmethod
    def find_pull_request_by_head(self, head: str) -> PullRequest | None:
        """Newest open pull request whose head branch is ``head``."""

    @abstractmethod
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        """Fetch one pull request."""

    @abstractmethod
    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        """Open a pull request from ``head`` into ``base``."""

    @abstractmethod
    def update_pull_request(self, pr_number: int, *, title: str, body: str) -> None:
        """Replace the title and body of a pull request."""

    @abstractmethod
    def list_pull_request_review_comments(self, pr_number: int) -> list[ReviewComment]:
        """Inline review comments on a pull request."""

    @abstractmethod
    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        """Submitted reviews on a pull request."""

    @abstractmethod
    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        """Reply within an inline review comment thread."""

    @abstractmethod
    def add_reaction(self, comment_id: int, kind: CommentKind, reaction: str) -> None:
        """React to an issue/PR conversation comment or to an inline review comment."""

    @abstractmethod
    def get_repository(self) -> RepositoryInfo:
        """Default branch and primary language."""

    @abstractmethod
    def get_branch_head(self, branch: str) -> str | None:
        """Commit sha the branch points at, or None when the branch does not exist."""

    @abstractmethod
    def list_tree(self, commit_sha: str) -> tuple[TreeEntry, ...]:
        """Every blob and tree reachable from a commit, recursively."""

    @abstractmethod
    def get_blob(self, blob_sha: str) -> str:
        """Decoded text of a blob."""

    @abstractmethod
    def get_file_content(self, path: str, ref: str) -> str | None:
        """Text of a file at a ref, or None when the path is not a file there."""

    @abstractmethod
    def create_blob(self, content: str) -> str:
        """Store file content and return the blob sha."""

    @abstractmethod
    def create_tree(self, base_commit_sha: str, changes: tuple[TreeChange, ...]) -> str:
        """Create a tree from the base commit's tree with ``changes`` applied."""

    @abstractmethod
    def create_commit(self, message: str, tree_sha: str, parent_shas: tuple[str, ...]) -> str:
        """Create a commit object and return its sha."""

    @abstractmethod
    def set_branch_head(self, branch: str, commit_sha: str, *, force: bool) -> None:
        """Point a branch at a commit, creating the branch when missing."""

    @abstractmethod
    def dispatch_workflow(self, workflow: str, ref: str) -> None:
        """Trigger a ``workflow_dispatch`` run of ``workflow`` on ``ref``."""

    @abstractmethod
    def list_workflow_runs(self, workflow: str, branch: str) -> tuple[WorkflowRunSnapshot, ...]:
        """Runs of ``workflow`` on ``branch``, newest last."""

    @abstractmethod
    def get_failed_run_log_tails(self, run_id: int) -> dict[str, str | None]:
        """Log tails of the failed jobs of a run, keyed by job name."""
