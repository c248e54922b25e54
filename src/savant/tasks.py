from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import re
from typing import Final, Literal

from savant.history import task_key
from savant.models import (
    LABEL_BLOCKED,
    LABEL_TURN,
    LABEL_WORKING,
    BotLabel,
    Issue,
    IssueComment,
    PullRequestReview,
    PullRequestSnapshot,
    RepositoryInfo,
    ReviewComment,
)
from savant.observability import log_event
from savant.platform import PlatformClient


LOGGER = logging.getLogger("savant.tasks")

AttentionState = Literal["needs-attention", "idle"]

_REVIEW_BRANCH_PREFIX: Final[str] = "fix/issue-"
_WORK_BRANCH_PREFIX: Final[str] = "bot/issue-"
_MAX_SLUG_CHARS: Final[int] = 50
_REVIEW_BRANCH_RE: Final[re.Pattern[str]] = re.compile(r"^fix/issue-(\d+)(?:-|$)")
# Claim precedence when a human left more than one bot label on an issue.
_LABEL_PRECEDENCE: Final[tuple[BotLabel, ...]] = (LABEL_WORKING, LABEL_BLOCKED, LABEL_TURN)
STYLE_GUIDE_PATHS: Final[tuple[str, ...]] = (
    "STYLE_GUIDE.md",
    "STYLE.md",
    "CODING_STYLE.md",
    "CONTRIBUTING.md",
    ".github/CONTRIBUTING.md",
    "docs/CONTRIBUTING.md",
)
README_PATHS: Final[tuple[str, ...]] = ("README.md", "README.rst", "README.txt", "README")


class TaskBuildError(RuntimeError):
    pass


def slugify_title(title: str) -> str:
    lowered = title.lower().replace("_", "-")
    collapsed = re.sub(r"[^a-z0-9]+", "-", lowered)
    return collapsed[:_MAX_SLUG_CHARS].strip("-")


def review_branch_name(issue_number: int, title: str) -> str:
    slug = slugify_title(title)
    base = f"{_REVIEW_BRANCH_PREFIX}{issue_number}"
    return f"{base}-{slug}" if slug else base


def work_branch_name(issue_number: int) -> str:
    return f"{_WORK_BRANCH_PREFIX}{issue_number}-work"


def issue_number_from_branch(branch: str) -> int | None:
    match = _REVIEW_BRANCH_RE.match(branch)
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class StyleGuide:
    path: str
    content: str


@dataclass(frozen=True)
class RepositoryContext:
    language: str | None
    file_tree: tuple[str, ...]
    tree_truncated: bool
    readme: str | None
    style_guides: tuple[StyleGuide, ...]


@dataclass(frozen=True)
class PullRequestContext:
    snapshot: PullRequestSnapshot
    comments: tuple[IssueComment, ...]
    review_comments: tuple[ReviewComment, ...]
    reviews: tuple[PullRequestReview, ...]


@dataclass(frozen=True)
class Task:
    issue: Issue
    issue_comments: tuple[IssueComment, ...]
    target_branch: str
    review_branch: str
    pull_request: PullRequestContext | None = None
    label_applied_at: datetime | None = None
    last_human_activity_at: datetime | None = None
    repository: RepositoryContext | None = None

    @property
    def key(self) -> str:
        return task_key(self.issue.owner, self.issue.repo, self.issue.number)

    @property
    def number(self) -> int:
        return self.issue.number

    @property
    def attention_label(self) -> BotLabel | None:
        return authoritative_label(self.issue.labels)

    @property
    def work_branch(self) -> str:
        return work_branch_name(self.issue.number)


def authoritative_label(labels: tuple[str, ...]) -> BotLabel | None:
    for label in _LABEL_PRECEDENCE:
        if label in labels:
            return label
    return None


def needs_attention(task: Task) -> bool:
    label = task.attention_label
    if label == LABEL_TURN:
        return True
    if label is None or task.last_human_activity_at is None:
        return False
    if task.label_applied_at is None:
        # A blocked item with no label history is waiting on any human reply;
        # a claimed one is not reclaimed without evidence of when it was claimed.
        return label == LABEL_BLOCKED
    return task.last_human_activity_at > task.label_applied_at


def attention_state(task: Task) -> AttentionState:
    return "needs-attention" if needs_attention(task) else "idle"


def parse_timestamp(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskBuilder:
    def __init__(
        self,
        platform: PlatformClient,
        *,
        bot_login: str,
        max_tree_entries: int = 2000,
    ) -> None:
        self._platform = platform
        self._bot_login = bot_login.strip().lower()
        self._max_tree_entries = max_tree_entries
        self._repository: RepositoryInfo | None = None

    def is_human(self, login: str) -> bool:
        normalized = login.strip().lower()
        return bool(normalized) and normalized != self._bot_login and not normalized.endswith("[bot]")

    def build(self, issue: Issue, *, review_branch: str | None = None) -> Task:
        issue_comments = tuple(self._platform.list_issue_comments(issue.number))
        branch = review_branch or review_branch_name(issue.number, issue.title)
        pull_request = self._pull_request_context(branch)

        label = authoritative_label(issue.labels)
        label_applied_at = None
        if label in (LABEL_WORKING, LABEL_BLOCKED):
            label_applied_at = self._label_applied_at(issue.number, label)

        task = Task(
            issue=issue,
            issue_comments=issue_comments,
            target_branch=self._repository_info().default_branch,
            review_branch=branch,
            pull_request=pull_request,
            label_applied_at=label_applied_at,
            last_human_activity_at=self._last_human_activity(issue_comments, pull_request),
        )
        log_event(
            LOGGER,
            "task_built",
            issue_number=issue.number,
            label=label,
            pr_number=pull_request.snapshot.number if pull_request else None,
            attention=attention_state(task),
        )
        return task

    def build_for_issue(self, issue_number: int) -> Task:
        return self.with_repository_context(self.build(self._platform.get_issue(issue_number)))

    def build_for_pull_request(self, pr_number: int) -> Task:
        snapshot = self._platform.get_pull_request(pr_number)
        issue_number = issue_number_from_branch(snapshot.head_ref)
        if issue_number is None:
            raise TaskBuildError(
                f"pull request #{pr_number} head branch {snapshot.head_ref!r} "
                "does not name an issue"
            )
        issue = self._platform.get_issue(issue_number)
        return self.with_repository_context(self.build(issue, review_branch=snapshot.head_ref))

    def with_repository_context(self, task: Task) -> Task:
        if task.repository is not None:
            return task
        ref = task.target_branch
        head_sha = self._platform.get_branch_head(ref)
        if head_sha is None:
            raise TaskBuildError(f"target branch {ref} does not exist")
        files = sorted(
            entry.path for entry in self._platform.list_tree(head_sha) if entry.kind == "blob"
        )
        readme = None
        for path in README_PATHS:
            readme = self._platform.get_file_content(path, head_sha)
            if readme is not None:
                break
        style_guides = []
        for path in STYLE_GUIDE_PATHS:
            content = self._platform.get_file_content(path, head_sha)
            if content is not None:
                style_guides.append(StyleGuide(path=path, content=content))
        context = RepositoryContext(
            language=self._repository_info().language,
            file_tree=tuple(files[: self._max_tree_entries]),
            tree_truncated=len(files) > self._max_tree_entries,
            readme=readme,
            style_guides=tuple(style_guides),
        )
        return replace(task, repository=context)

    def _repository_info(self) -> RepositoryInfo:
        if self._repository is None:
            self._repository = self._platform.get_repository()
        return self._repository

    def _pull_request_context(self, branch: str) -> PullRequestContext | None:
        found = self._platform.find_pull_request_by_head(branch)
        if found is None:
            return None
        return PullRequestContext(
            snapshot=self._platform.get_pull_request(found.number),
            comments=tuple(self._platform.list_issue_comments(found.number)),
            review_comments=tuple(self._platform.list_pull_request_review_comments(found.number)),
            reviews=tuple(self._platform.list_pull_request_reviews(found.number)),
        )

    def _label_applied_at(self, issue_number: int, label: str) -> datetime | None:
        applied = [
            parsed
            for event in self._platform.list_label_events(issue_number)
            if event.label == label and (parsed := parse_timestamp(event.created_at)) is not None
        ]
        return max(applied) if applied else None

    def _last_human_activity(
        self,
        issue_comments: tuple[IssueComment, ...],
        pull_request: PullRequestContext | None,
    ) -> datetime | None:
        stamps: list[str] = []
        comments = list(issue_comments)
        if pull_request is not None:
            comments.extend(pull_request.comments)
            for review_comment in pull_request.review_comments:
                if self.is_human(review_comment.user_login):
                    stamps.extend([review_comment.created_at, review_comment.updated_at])
            for review in pull_request.reviews:
                if self.is_human(review.user_login):
                    stamps.append(review.submitted_at)
        for comment in comments:
            if self.is_human(comment.user_login):
                stamps.extend([comment.created_at, comment.updated_at])
        parsed = [value for stamp in stamps if (value := parse_timestamp(stamp)) is not None]
        return max(parsed) if parsed else None
