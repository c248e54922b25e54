from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
import json
import logging
import threading
from urllib.parse import quote, urlencode

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
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
)
from savant.observability import log_event
from savant.platform import PlatformClient
from savant.shell import CommandError, run


LOGGER = logging.getLogger("savant.github_gateway")
_ACTIONS_GREEN_CONCLUSIONS = {"success", "neutral", "skipped"}
_WORKFLOWS_DIR = ".github/workflows/"
_PAGE_SIZE = 100
_GH_TIMEOUT_SECONDS = 120.0


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubPollingError(GitHubApiError):
    """Recoverable GitHub read failure; caller should retry next poll."""


class GitHubNotFoundError(GitHubApiError):
    pass


class GitHubAuthenticationError(GitHubApiError):
    """Credentials were rejected. Retrying will not help."""


@dataclass(frozen=True)
class GitHubGateway(PlatformClient):
    owner: str
    name: str
    # path -> (etag, payload) for conditional GETs; shared by the poller and engine threads.
    _get_cache: dict[str, tuple[str, object]] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _get_cache_lock: threading.Lock = field(
        default_factory=threading.Lock,
        init=False,
        repr=False,
        compare=False,
    )

    def search_assigned_issues(self, assignee: str) -> list[Issue]:
        query = f"repo:{self.owner}/{self.name} is:issue is:open assignee:{assignee}"
        issues: list[Issue] = []
        page = 1
        while True:
            path = f"/search/issues?{urlencode({'q': query, 'per_page': _PAGE_SIZE, 'page': page})}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise GitHubPollingError("Unexpected GitHub response: expected object for search")
            items = payload_obj.get("items")
            if not isinstance(items, list):
                raise GitHubPollingError("Unexpected GitHub response: expected search items list")
            for item in items:
                item_obj = _as_object_dict(item)
                if item_obj is None or "pull_request" in item_obj:
                    continue
                issues.append(self._issue_from_payload(item_obj))
            if len(items) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="search_assigned_issues",
            assignee=assignee,
            count=len(issues),
        )
        return issues

    def get_issue(self, issue_number: int) -> Issue:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for issue")
        issue = self._issue_from_payload(payload_obj)
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=issue_number)
        return issue

    def list_issue_labels(self, issue_number: int) -> tuple[str, ...]:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels?per_page=100"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list of labels")
        return _label_names(payload)

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            return
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": list(labels)})
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=",".join(labels))

    def remove_label(self, issue_number: int, label: str) -> bool:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/{quote(label, safe='')}"
        )
        try:
            self._api_json("DELETE", path)
        except GitHubNotFoundError:
            log_event(
                LOGGER,
                "github_label_already_absent",
                issue_number=issue_number,
                label=label,
            )
            return False
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)
        return True

    def ensure_label(self, name: str, color: str, description: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/labels/{quote(name, safe='')}"
        try:
            self._api_json("GET", path)
            return
        except GitHubNotFoundError:
            pass
        try:
            self._api_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/labels",
                payload={"name": name, "color": color, "description": description},
            )
        except GitHubApiError as exc:
            # 422 means another process created it first.
            if exc.status_code != 422:
                raise
        log_event(LOGGER, "github_label_ensured", label=name)

    def list_label_events(self, issue_number: int) -> list[LabelEvent]:
        events: list[LabelEvent] = []
        for item_obj in self._paged_list(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/events", what="issue events"
        ):
            if item_obj.get("event") != "labeled":
                continue
            label_obj = _as_object_dict(item_obj.get("label"))
            actor_obj = _as_object_dict(item_obj.get("actor"))
            events.append(
                LabelEvent(
                    label=_as_string(label_obj.get("name") if label_obj else None),
                    actor_login=_as_login(actor_obj.get("login") if actor_obj else None),
                    created_at=_as_string(item_obj.get("created_at")),
                )
            )
        return events

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        for item_obj in self._paged_list(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments", what="issue comments"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                IssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.repo_full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def find_pull_request_by_head(self, head: str) -> PullRequest | None:
        query = urlencode({"state": "open", "head": f"{self.owner}:{head}", "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/pulls?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubPollingError(
                "Unexpected GitHub response: expected list for pull request lookup"
            )

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            number = _as_int(item_obj.get("number"), field="number")
            html_url = _as_string(item_obj.get("html_url"))
            candidates.append(PullRequest(number=number, html_url=html_url))

        if not candidates:
            log_event(
                LOGGER,
                "github_read",
                endpoint="pull_request_lookup_by_head",
                head=head,
                found=False,
            )
            return None

        selected = max(candidates, key=lambda pr: pr.number)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            found=True,
            pr_number=selected.number,
        )
        return selected

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")
        head_obj = _as_object_dict(payload_obj.get("head")) or {}
        base_obj = _as_object_dict(payload_obj.get("base")) or {}
        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            head_ref=_as_string(head_obj.get("ref")),
            head_sha=_as_string(head_obj.get("sha")),
            base_ref=_as_string(base_obj.get("ref")),
            state=_as_string(payload_obj.get("state")).strip().lower(),
            merged=payload_obj.get("merged") is True,
            updated_at=_as_string(payload_obj.get("updated_at")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=pr_number)
        return snapshot

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload_obj = _as_object_dict(
                self._api_json(
                    "POST",
                    path,
                    payload={"title": title, "head": head, "base": base, "body": body},
                )
            )
            if payload_obj is None:
                raise GitHubApiError("Unexpected GitHub response: expected object for PR")
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.repo_full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.repo_full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def update_pull_request(self, pr_number: int, *, title: str, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        self._api_json("PATCH", path, payload={"title": title, "body": body})
        log_event(LOGGER, "github_pr_updated", pr_number=pr_number)

    def list_pull_request_review_comments(self, pr_number: int) -> list[ReviewComment]:
        comments: list[ReviewComment] = []
        for item_obj in self._paged_list(
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments", what="review comments"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                ReviewComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    path=_as_string(item_obj.get("path")),
                    line=_as_optional_int(item_obj.get("line")),
                    in_reply_to_id=_as_optional_int(item_obj.get("in_reply_to_id")),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                    diff_hunk=_as_string(item_obj.get("diff_hunk")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        reviews: list[PullRequestReview] = []
        for item_obj in self._paged_list(
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews", what="reviews"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            reviews.append(
                PullRequestReview(
                    review_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    state=_as_string(item_obj.get("state")).strip().lower(),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    submitted_at=_as_string(item_obj.get("submitted_at")),
                )
            )
        return reviews

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"
        try:
            self._api_json(
                "POST",
                path,
                payload={"body": body, "in_reply_to": review_comment_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_review_reply_failed",
                repo_full_name=self.repo_full_name,
                pr_number=pr_number,
                review_comment_id=review_comment_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_review_reply_posted",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
        )

    def add_reaction(self, comment_id: int, kind: CommentKind, reaction: str) -> None:
        collection = "issues/comments" if kind == "issue" else "pulls/comments"
        path = f"/repos/{self.owner}/{self.name}/{collection}/{comment_id}/reactions"
        self._api_json("POST", path, payload={"content": reaction})
        log_event(
            LOGGER,
            "github_reaction_added",
            comment_id=comment_id,
            kind=kind,
            reaction=reaction,
        )

    def get_repository(self) -> RepositoryInfo:
        payload_obj = _as_object_dict(self._api_json("GET", f"/repos/{self.owner}/{self.name}"))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for repository")
        default_branch = _as_string(payload_obj.get("default_branch")).strip()
        if not default_branch:
            raise GitHubPollingError("Unexpected GitHub response: repository has no default branch")
        return RepositoryInfo(
            default_branch=default_branch,
            language=_as_optional_str(payload_obj.get("language")),
        )

    def get_branch_head(self, branch: str) -> str | None:
        path = f"/repos/{self.owner}/{self.name}/git/ref/heads/{quote(branch, safe='/')}"
        try:
            payload_obj = _as_object_dict(self._api_json("GET", path))
        except GitHubNotFoundError:
            return None
        object_obj = _as_object_dict(payload_obj.get("object")) if payload_obj else None
        if object_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected ref object")
        return _as_string(object_obj.get("sha"))

    def list_tree(self, commit_sha: str) -> tuple[TreeEntry, ...]:
        path = f"/repos/{self.owner}/{self.name}/git/trees/{commit_sha}?recursive=1"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for tree")
        tree_payload = payload_obj.get("tree")
        if not isinstance(tree_payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected tree list")
        if payload_obj.get("truncated") is True:
            log_event(LOGGER, "github_tree_truncated", commit_sha=commit_sha)

        entries: list[TreeEntry] = []
        for item in tree_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            kind = item_obj.get("type")
            # Submodules show up as "commit" entries and have no content here.
            if kind not in {"blob", "tree"}:
                continue
            entries.append(
                TreeEntry(
                    path=_as_string(item_obj.get("path")),
                    kind="blob" if kind == "blob" else "tree",
                    sha=_as_string(item_obj.get("sha")),
                )
            )
        log_event(
            LOGGER, "github_read", endpoint="tree", commit_sha=commit_sha, count=len(entries)
        )
        return tuple(entries)

    def get_blob(self, blob_sha: str) -> str:
        path = f"/repos/{self.owner}/{self.name}/git/blobs/{blob_sha}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for blob")
        return _decode_content(payload_obj)

    def get_file_content(self, path: str, ref: str) -> str | None:
        api_path = (
            f"/repos/{self.owner}/{self.name}/contents/{quote(path, safe='/')}?"
            f"{urlencode({'ref': ref})}"
        )
        try:
            payload = self._api_json("GET", api_path)
        except GitHubNotFoundError:
            return None
        payload_obj = _as_object_dict(payload)
        if payload_obj is None or payload_obj.get("type") != "file":
            return None
        return _decode_content(payload_obj)

    def create_blob(self, content: str) -> str:
        path = f"/repos/{self.owner}/{self.name}/git/blobs"
        payload_obj = _as_object_dict(
            self._api_json("POST", path, payload={"content": content, "encoding": "utf-8"})
        )
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for blob")
        return _as_string(payload_obj.get("sha"))

    def create_tree(self, base_commit_sha: str, changes: tuple[TreeChange, ...]) -> str:
        commit_path = f"/repos/{self.owner}/{self.name}/git/commits/{base_commit_sha}"
        commit_obj = _as_object_dict(self._api_json("GET", commit_path))
        tree_obj = _as_object_dict(commit_obj.get("tree")) if commit_obj else None
        if tree_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected commit tree")
        entries: list[object] = [
            {"path": change.path, "mode": "100644", "type": "blob", "sha": change.blob_sha}
            for change in changes
        ]
        try:
            payload = self._api_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/git/trees",
                payload={"base_tree": _as_string(tree_obj.get("sha")), "tree": entries},
            )
        except GitHubNotFoundError as exc:
            touched = [c.path for c in changes if c.path.startswith(_WORKFLOWS_DIR)]
            if touched:
                raise GitHubApiError(
                    "Insufficient permissions to modify workflow files: " + ", ".join(touched),
                    status_code=exc.status_code,
                ) from exc
            raise
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for tree")
        return _as_string(payload_obj.get("sha"))

    def create_commit(self, message: str, tree_sha: str, parent_shas: tuple[str, ...]) -> str:
        path = f"/repos/{self.owner}/{self.name}/git/commits"
        payload_obj = _as_object_dict(
            self._api_json(
                "POST",
                path,
                payload={"message": message, "tree": tree_sha, "parents": list(parent_shas)},
            )
        )
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for commit")
        sha = _as_string(payload_obj.get("sha"))
        log_event(LOGGER, "github_commit_object_created", commit_sha=sha)
        return sha

    def set_branch_head(self, branch: str, commit_sha: str, *, force: bool) -> None:
        if self.get_branch_head(branch) is None:
            self._api_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/git/refs",
                payload={"ref": f"refs/heads/{branch}", "sha": commit_sha},
            )
        else:
            self._api_json(
                "PATCH",
                f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(branch, safe='/')}",
                payload={"sha": commit_sha, "force": force},
            )
        log_event(LOGGER, "github_branch_updated", branch=branch, commit_sha=commit_sha)

    def dispatch_workflow(self, workflow: str, ref: str) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/actions/workflows/"
            f"{quote(workflow, safe='')}/dispatches"
        )
        self._api_json("POST", path, payload={"ref": ref})
        log_event(LOGGER, "github_workflow_dispatched", workflow=workflow, ref=ref)

    def list_workflow_runs(self, workflow: str, branch: str) -> tuple[WorkflowRunSnapshot, ...]:
        query = urlencode({"branch": branch, "per_page": "100"})
        path = (
            f"/repos/{self.owner}/{self.name}/actions/workflows/"
            f"{quote(workflow, safe='')}/runs?{query}"
        )
        items = _object_list_field(self._api_json("GET", path), "workflow_runs")
        runs = sorted(
            (
                WorkflowRunSnapshot(
                    run_id=_as_int(item.get("id"), field="id"),
                    name=_as_string(item.get("name")),
                    status=_lowered(item.get("status")) or "",
                    conclusion=_lowered(item.get("conclusion")),
                    html_url=_as_string(item.get("html_url")),
                    head_sha=_as_string(item.get("head_sha")),
                    head_branch=_as_string(item.get("head_branch")),
                    created_at=_as_string(item.get("created_at")),
                    updated_at=_as_string(item.get("updated_at")),
                )
                for item in items
            ),
            key=lambda run: run.run_id,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            workflow=workflow,
            branch=branch,
            count=len(runs),
        )
        return tuple(runs)

    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJobSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/jobs?per_page=100"
        items = _object_list_field(self._api_json("GET", path), "jobs")
        jobs = [
            WorkflowJobSnapshot(
                job_id=_as_int(item.get("id"), field="id"),
                name=_as_string(item.get("name")),
                status=_lowered(item.get("status")) or "",
                conclusion=_lowered(item.get("conclusion")),
                html_url=_as_string(item.get("html_url")),
            )
            for item in items
        ]
        jobs.sort(key=lambda job: job.job_id)
        return tuple(jobs)

    def get_failed_run_log_tails(
        self,
        run_id: int,
        tail_lines_per_action: int = 200,
    ) -> dict[str, str | None]:
        """Map each failed job of ``run_id`` to the tail of its log.

        Jobs sharing a name are told apart by a ``[job <id>]`` suffix. A log
        that cannot be fetched maps to ``None``.
        """
        if tail_lines_per_action < 1:
            raise ValueError("tail_lines_per_action must be >= 1")

        failed = [
            job
            for job in self.list_workflow_jobs(run_id)
            if job.status == "completed" and job.conclusion not in _ACTIONS_GREEN_CONCLUSIONS
        ]
        job_names = [job.name.strip() or "unnamed-action" for job in failed]
        tails: dict[str, str | None] = {}
        for job, job_name in zip(failed, job_names, strict=True):
            label = job_name if job_names.count(job_name) == 1 else f"{job_name} [job {job.job_id}]"
            path = f"/repos/{self.owner}/{self.name}/actions/jobs/{job.job_id}/logs"
            try:
                tails[label] = _tail_lines(self._api_text("GET", path), max_lines=tail_lines_per_action)
            except GitHubApiError as exc:
                log_event(
                    LOGGER,
                    "actions_failure_logs_unavailable",
                    run_id=run_id,
                    job_id=job.job_id,
                    action_name=label,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                tails[label] = None
        return tails

    def _issue_from_payload(self, payload_obj: dict[str, object]) -> Issue:
        labels_payload = payload_obj.get("labels")
        assignees_payload = payload_obj.get("assignees")
        assignees: list[str] = []
        if isinstance(assignees_payload, list):
            for raw in assignees_payload:
                assignee_obj = _as_object_dict(raw)
                if assignee_obj is not None:
                    assignees.append(_as_login(assignee_obj.get("login")))
        return Issue(
            owner=self.owner,
            repo=self.name,
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            labels=_label_names(labels_payload if isinstance(labels_payload, list) else []),
            assignees=tuple(assignees),
            updated_at=_as_string(payload_obj.get("updated_at")),
        )

    def _paged_list(self, base_path: str, *, what: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            path = f"{base_path}?{urlencode({'per_page': _PAGE_SIZE, 'page': page})}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list of {what}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _api_text(self, method: str, path: str) -> str:
        method_upper = method.upper()
        if method_upper != "GET":
            raise ValueError("_api_text currently only supports GET")
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        raw = _run_gh(cmd, method_upper, path)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            raise GitHubPollingError(f"GitHub GET failed for path {path}: {exc}") from exc
        _raise_for_status(method_upper, path, status_code, body)
        return body

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper]
        cached: tuple[str, object] | None = None
        if method_upper == "GET":
            with self._get_cache_lock:
                cached = self._get_cache.get(path)
            if cached is not None:
                cmd.extend(["--header", f"If-None-Match: {cached[0]}"])
        cmd.extend(["--include", path])
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        raw = _run_gh(cmd, method_upper, path, input_text=stdin_payload)
        try:
            status_code, headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                raw_preview=_preview_for_log(raw),
            )
            if method_upper == "GET":
                raise GitHubPollingError(f"GitHub GET failed for path {path}: {exc}") from exc
            raise GitHubApiError(f"GitHub {method_upper} failed for path {path}: {exc}") from exc

        if method_upper == "GET" and status_code == 304:
            if cached is None:
                raise GitHubPollingError(f"GitHub returned 304 for uncached path: {path}")
            return cached[1]

        _raise_for_status(method_upper, path, status_code, body)
        if not body.strip():
            return None
        try:
            payload_obj = json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubPollingError(f"GitHub returned invalid JSON for path {path}") from exc
        if method_upper == "GET":
            etag = headers.get("etag")
            if etag:
                with self._get_cache_lock:
                    self._get_cache[path] = (etag, payload_obj)
        return payload_obj


def _run_gh(cmd: list[str], method: str, path: str, *, input_text: str | None = None) -> str:
    try:
        return run(cmd, input_text=input_text, check=False, timeout_seconds=_GH_TIMEOUT_SECONDS)
    except CommandError as exc:
        if method == "GET":
            raise GitHubPollingError(f"GitHub GET timed out for path {path}") from exc
        raise GitHubApiError(f"GitHub {method} timed out for path {path}") from exc


def _raise_for_status(method: str, path: str, status_code: int, body: str) -> None:
    if 200 <= status_code < 300:
        return
    message = body.strip() or "<empty>"
    log_event(
        LOGGER,
        "github_request_failed",
        method=method,
        path=path,
        status_code=status_code,
        body_preview=_preview_for_log(message),
    )
    detail = f"GitHub API {method} {path} failed with status {status_code}: {message}"
    if status_code == 401:
        raise GitHubAuthenticationError(detail, status_code=status_code)
    if status_code == 404:
        raise GitHubNotFoundError(detail, status_code=status_code)
    if method == "GET":
        raise GitHubPollingError(detail, status_code=status_code)
    raise GitHubApiError(detail, status_code=status_code)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    """Split ``gh api --include`` output into status, lowercased headers and body."""
    lines = raw.replace("\r\n", "\n").split("\n")
    start = next((index for index, line in enumerate(lines) if line.startswith("HTTP/")), None)
    if start is None:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")
    while True:
        end = start + 1
        while end < len(lines) and lines[end] != "":
            end += 1
        # Redirects and "100 Continue" produce several status blocks; the last one wins.
        if end + 1 < len(lines) and lines[end + 1].startswith("HTTP/"):
            start = end + 1
            continue
        break

    status_line = lines[start]
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")
    headers: dict[str, str] = {}
    for line in lines[start + 1 : end]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return int(parts[1]), headers, "\n".join(lines[end + 1 :])


def _decode_content(payload_obj: dict[str, object]) -> str:
    content = _as_string(payload_obj.get("content"))
    encoding = _as_string(payload_obj.get("encoding")).strip().lower()
    if encoding in {"", "utf-8"}:
        return content
    if encoding != "base64":
        raise GitHubPollingError(f"Unsupported GitHub content encoding: {encoding}")
    try:
        raw = base64.b64decode(content)
    except (binascii.Error, ValueError) as exc:
        raise GitHubPollingError("GitHub returned malformed base64 content") from exc
    return raw.decode("utf-8", errors="replace")


def _label_names(payload: list[object]) -> tuple[str, ...]:
    names: list[str] = []
    for raw in payload:
        label_obj = _as_object_dict(raw)
        if label_obj is None:
            continue
        name = _as_string(label_obj.get("name"))
        if name:
            names.append(name)
    return tuple(names)


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    flat = text.strip().replace("\n", "\\n")
    if not flat:
        return "<empty>"
    return flat if len(flat) <= limit else flat[:limit] + "..."


def _tail_lines(raw_text: str, *, max_lines: int) -> str:
    if max_lines < 1:
        raise ValueError("max_lines must be >= 1")
    lines = raw_text.splitlines()[-max_lines:]
    return "\n".join(lines) if lines else "<empty>"


def _object_list_field(payload: object, key: str) -> list[dict[str, object]]:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise GitHubPollingError(f"Unexpected GitHub response: expected object holding {key}")
    items = payload_obj.get(key)
    if not isinstance(items, list):
        raise GitHubPollingError(f"Unexpected GitHub response: expected {key} list")
    return [item for item in map(_as_object_dict, items) if item is not None]


def _as_object_dict(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return value
    return None


def _as_string(value: object) -> str:
    return "" if value is None else str(value)


def _as_optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _lowered(value: object) -> str | None:
    text = _as_string(value).strip().lower()
    return text or None


def _as_login(value: object) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise RuntimeError(f"Unexpected GitHub value for {field}: {value!r}")
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub value for {field}: {value!r}") from exc


def _as_optional_int(value: object) -> int | None:
    return None if value is None else _as_int(value, field="optional int field")
