from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal


BotLabel = Literal["bot-turn", "bot-working", "bot-blocked"]
TreeEntryKind = Literal["blob", "tree"]
# PR conversation comments are issue comments; inline review comments are separate.
CommentKind = Literal["issue", "review"]

REACTIONS: Final[tuple[str, ...]] = ("+1", "-1", "laugh", "confused", "heart", "hooray", "rocket", "eyes")

LABEL_TURN: Final[BotLabel] = "bot-turn"
LABEL_WORKING: Final[BotLabel] = "bot-working"
LABEL_BLOCKED: Final[BotLabel] = "bot-blocked"
BOT_LABELS: Final[tuple[BotLabel, ...]] = (LABEL_TURN, LABEL_WORKING, LABEL_BLOCKED)


@dataclass(frozen=True)
class LabelSpec:
    name: BotLabel
    color: str
    description: str


BOT_LABEL_SPECS: Final[tuple[LabelSpec, ...]] = (
    LabelSpec(LABEL_TURN, "2020f0", "Waiting for the bot to act"),
    LabelSpec(LABEL_WORKING, "fbca04", "The bot is working on this"),
    LabelSpec(LABEL_BLOCKED, "f03010", "The bot needs a human to unblock it"),
)


@dataclass(frozen=True)
class Issue:
    owner: str
    repo: str
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    assignees: tuple[str, ...] = ()
    updated_at: str = ""

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    html_url: str
    head_ref: str
    head_sha: str
    base_ref: str
    state: str
    merged: bool
    updated_at: str = ""


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    in_reply_to_id: int | None
    user_login: str
    html_url: str
    created_at: str
    updated_at: str
    diff_hunk: str = ""


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    body: str
    state: str
    user_login: str
    submitted_at: str


@dataclass(frozen=True)
class LabelEvent:
    label: str
    actor_login: str
    created_at: str


@dataclass(frozen=True)
class RepositoryInfo:
    default_branch: str
    language: str | None


@dataclass(frozen=True)
class TreeEntry:
    path: str
    kind: TreeEntryKind
    sha: str


@dataclass(frozen=True)
class TreeChange:
    """A path to point at a blob, or to remove from the tree when ``blob_sha`` is None."""

    path: str
    blob_sha: str | None


@dataclass(frozen=True)
class WorkflowRunSnapshot:
    run_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    head_sha: str
    head_branch: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class WorkflowJobSnapshot:
    job_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
