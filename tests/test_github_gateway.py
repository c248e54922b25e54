from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs, urlparse

import pytest

from savant.github_gateway import (
    GitHubApiError,
    GitHubAuthenticationError,
    GitHubGateway,
    GitHubNotFoundError,
    GitHubPollingError,
    _as_int,
    _as_login,
    _as_object_dict,
    _as_optional_int,
    _as_optional_str,
    _as_string,
    _decode_content,
    _parse_http_response,
    _preview_for_log,
    _tail_lines,
)
from savant.models import TreeChange
from savant.shell import CommandError
from savant.observability import configure_logging


Call = tuple[str, str, dict[str, object] | None]


def _install(
    monkeypatch: pytest.MonkeyPatch,
    responder: object,
) -> list[Call]:
    calls: list[Call] = []

    def fake_api(
        self: GitHubGateway,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return responder(method, path, payload)  # type: ignore[operator]

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)
    return calls


def _http(status: str, body: str = "", *headers: str) -> str:
    return "\n".join((f"HTTP/2.0 {status}", *headers, "", body))


@pytest.fixture(autouse=True)
def _quiet_logging() -> None:
    configure_logging(None)


def test_search_assigned_issues_pages_and_skips_pull_requests(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first_page = [
        {
            "number": n,
            "title": f"Issue {n}",
            "body": None,
            "html_url": f"u{n}",
            "labels": [{"name": "bot-turn"}, "junk"],
            "assignees": [{"login": "Savant-Bot"}],
        }
        for n in range(100)
    ]
    first_page[3] = {"number": 3, "pull_request": {}}

    def responder(method: str, path: str, payload: object) -> object:
        _ = method, payload
        page = parse_qs(urlparse(path).query)["page"][0]
        return {"items": first_page if page == "1" else [{"number": 500, "title": "Last"}]}

    calls = _install(monkeypatch, responder)
    issues = GitHubGateway("acme", "widgets").search_assigned_issues("savant-bot")

    assert len(calls) == 2
    query = parse_qs(urlparse(calls[0][1]).query)
    assert query["q"] == ["repo:acme/widgets is:issue is:open assignee:savant-bot"]
    assert len(issues) == 100
    assert 3 not in [issue.number for issue in issues]
    assert issues[0].labels == ("bot-turn",)
    assert issues[0].assignees == ("savant-bot",)
    assert issues[0].body == ""
    assert issues[0].repo_full_name == "acme/widgets"
    assert issues[-1].number == 500


def test_search_assigned_issues_rejects_bad_payloads(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, lambda method, path, payload: {"items": "nope"})
    with pytest.raises(GitHubPollingError, match="search items"):
        GitHubGateway("acme", "widgets").search_assigned_issues("savant-bot")

    _install(monkeypatch, lambda method, path, payload: [])
    with pytest.raises(GitHubPollingError, match="expected object"):
        GitHubGateway("acme", "widgets").search_assigned_issues("savant-bot")


def test_label_operations(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = payload
        if method == "GET":
            return [{"name": "bot-turn"}, {"name": ""}, {"name": "bug"}]
        if method == "DELETE" and path.endswith("/labels/bot-blocked"):
            raise GitHubNotFoundError("gone", status_code=404)
        return None

    calls = _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    assert gateway.list_issue_labels(4) == ("bot-turn", "bug")
    gateway.add_labels(4, ())
    gateway.add_labels(4, ("bot-working",))
    assert gateway.remove_label(4, "bot-turn") is True
    assert gateway.remove_label(4, "bot-blocked") is False
    gateway.remove_label(4, "needs triage")

    assert calls[1] == ("POST", "/repos/acme/widgets/issues/4/labels", {"labels": ["bot-working"]})
    assert calls[2][:2] == ("DELETE", "/repos/acme/widgets/issues/4/labels/bot-turn")
    assert calls[4][1] == "/repos/acme/widgets/issues/4/labels/needs%20triage"


def test_ensure_label_creates_missing_label_and_tolerates_races(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    existing = {"bot-turn"}

    def responder(method: str, path: str, payload: dict[str, object] | None) -> object:
        name = path.rsplit("/", 1)[1]
        if method == "GET":
            if name in existing:
                return {"name": name}
            raise GitHubNotFoundError("missing", status_code=404)
        assert payload is not None
        if payload["name"] == "bot-blocked":
            raise GitHubApiError("already exists", status_code=422)
        if payload["name"] == "broken":
            raise GitHubApiError("forbidden", status_code=403)
        return {"name": payload["name"]}

    calls = _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    gateway.ensure_label("bot-turn", "0e8a16", "Waiting on the bot")
    gateway.ensure_label("bot-working", "fbca04", "Bot is working")
    gateway.ensure_label("bot-blocked", "d93f0b", "Bot is blocked")
    with pytest.raises(GitHubApiError, match="forbidden"):
        gateway.ensure_label("broken", "000000", "")

    posts = [payload for method, _, payload in calls if method == "POST"]
    assert posts[0] == {"name": "bot-working", "color": "fbca04", "description": "Bot is working"}
    assert len(posts) == 3


def test_list_label_events_keeps_only_labeled_events(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = method, path, payload
        return [
            {
                "event": "labeled",
                "label": {"name": "bot-turn"},
                "actor": {"login": "Alice"},
                "created_at": "2024-05-01T10:00:00Z",
            },
            {"event": "unlabeled", "label": {"name": "bot-turn"}},
            {"event": "labeled", "label": None, "actor": None, "created_at": "2024-05-02T10:00:00Z"},
        ]

    _install(monkeypatch, responder)
    events = GitHubGateway("acme", "widgets").list_label_events(5)

    assert [(e.label, e.actor_login, e.created_at) for e in events] == [
        ("bot-turn", "alice", "2024-05-01T10:00:00Z"),
        ("", "", "2024-05-02T10:00:00Z"),
    ]


def test_pull_request_reads(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = method, payload
        if "/pulls?" in path:
            return [
                {"number": 8, "html_url": "u8"},
                "junk",
                {"number": 12, "html_url": "u12"},
            ]
        if path.endswith("/pulls/12"):
            return {
                "number": 12,
                "title": "Fix #4",
                "body": "Fixes #4",
                "html_url": "u12",
                "head": {"ref": "fix/issue-4-x", "sha": "abc"},
                "base": {"ref": "main"},
                "state": "OPEN",
                "merged": False,
            }
        if "/pulls/12/comments?" in path:
            return [
                {
                    "id": 30,
                    "body": "rename this",
                    "path": "src/a.py",
                    "line": "7",
                    "in_reply_to_id": None,
                    "user": {"login": "Reviewer"},
                    "html_url": "c30",
                    "created_at": "t1",
                    "updated_at": "t2",
                    "diff_hunk": "@@",
                }
            ]
        if "/pulls/12/reviews?" in path:
            return [{"id": 40, "body": "", "state": "CHANGES_REQUESTED", "user": {"login": "r"}}]
        raise AssertionError(path)

    calls = _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    found = gateway.find_pull_request_by_head("fix/issue-4-x")
    snapshot = gateway.get_pull_request(12)
    comments = gateway.list_pull_request_review_comments(12)
    reviews = gateway.list_pull_request_reviews(12)

    assert found is not None and found.number == 12
    assert parse_qs(urlparse(calls[0][1]).query)["head"] == ["acme:fix/issue-4-x"]
    assert snapshot.head_ref == "fix/issue-4-x"
    assert snapshot.state == "open"
    assert comments[0].line == 7
    assert comments[0].user_login == "reviewer"
    assert reviews[0].state == "changes_requested"


def test_find_pull_request_by_head_without_match(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, lambda method, path, payload: [])
    assert GitHubGateway("acme", "widgets").find_pull_request_by_head("nope") is None

    _install(monkeypatch, lambda method, path, payload: {})
    with pytest.raises(GitHubPollingError, match="pull request lookup"):
        GitHubGateway("acme", "widgets").find_pull_request_by_head("nope")


def test_issue_comments_paginate(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = method, payload
        page = int(parse_qs(urlparse(path).query)["page"][0])
        start = (page - 1) * 100
        count = 100 if page == 1 else 5
        return [
            {"id": start + i, "body": "b", "user": {"login": "u"}, "created_at": "t"}
            for i in range(count)
        ]

    calls = _install(monkeypatch, responder)
    comments = GitHubGateway("acme", "widgets").list_issue_comments(4)

    assert len(calls) == 2
    assert len(comments) == 105
    assert comments[-1].comment_id == 104


def test_write_operations_send_expected_payloads(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = payload
        if method == "POST" and path.endswith("/pulls"):
            return {"number": 9, "html_url": "https://example/pr/9"}
        return {}

    calls = _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    pr = gateway.create_pull_request("Fix #4", "fix/issue-4-x", "main", "Fixes #4")
    gateway.update_pull_request(9, title="Fix #4 again", body="b")
    gateway.post_issue_comment(4, "On it")
    gateway.post_review_comment_reply(9, 30, "Done")
    gateway.add_reaction(11, "issue", "+1")
    gateway.add_reaction(31, "review", "eyes")

    assert pr.number == 9
    assert calls == [
        (
            "POST",
            "/repos/acme/widgets/pulls",
            {"title": "Fix #4", "head": "fix/issue-4-x", "base": "main", "body": "Fixes #4"},
        ),
        ("PATCH", "/repos/acme/widgets/pulls/9", {"title": "Fix #4 again", "body": "b"}),
        ("POST", "/repos/acme/widgets/issues/4/comments", {"body": "On it"}),
        ("POST", "/repos/acme/widgets/pulls/9/comments", {"body": "Done", "in_reply_to": 30}),
        ("POST", "/repos/acme/widgets/issues/comments/11/reactions", {"content": "+1"}),
        ("POST", "/repos/acme/widgets/pulls/comments/31/reactions", {"content": "eyes"}),
    ]


def test_write_failures_emit_failed_events(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)

    def responder(method: str, path: str, payload: object) -> object:
        _ = method, path, payload
        raise GitHubApiError("boom", status_code=500)

    _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    with pytest.raises(GitHubApiError):
        gateway.create_pull_request("t", "h", "b", "body")
    with pytest.raises(GitHubApiError):
        gateway.post_issue_comment(4, "hi")

    text = capsys.readouterr().err
    assert "event=github_pr_create_failed" in text
    assert "event=github_issue_comment_failed" in text
    assert "repo_full_name=acme/widgets" in text


def test_repository_branch_and_content_reads(monkeypatch: pytest.MonkeyPatch) -> None:
    encoded = base64.b64encode("print('hi')\n".encode()).decode()

    def responder(method: str, path: str, payload: object) -> object:
        _ = method, payload
        if path == "/repos/acme/widgets":
            return {"default_branch": "main", "language": "Python"}
        if path.endswith("/git/ref/heads/main"):
            return {"object": {"sha": "head-sha"}}
        if path.endswith("/git/ref/heads/missing"):
            raise GitHubNotFoundError("nope", status_code=404)
        if "/git/trees/head-sha" in path:
            return {
                "truncated": False,
                "tree": [
                    {"path": "src", "type": "tree", "sha": "t1"},
                    {"path": "src/a.py", "type": "blob", "sha": "b1"},
                    {"path": "vendor/lib", "type": "commit", "sha": "c1"},
                ],
            }
        if path.endswith("/git/blobs/b1"):
            return {"content": encoded, "encoding": "base64"}
        if "/contents/README.md?" in path:
            return {"type": "file", "content": "hello", "encoding": "utf-8"}
        if "/contents/src?" in path:
            return [{"type": "file"}]
        if "/contents/" in path:
            raise GitHubNotFoundError("nope", status_code=404)
        raise AssertionError(path)

    _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    repo = gateway.get_repository()
    entries = gateway.list_tree("head-sha")

    assert (repo.default_branch, repo.language) == ("main", "Python")
    assert gateway.get_branch_head("main") == "head-sha"
    assert gateway.get_branch_head("missing") is None
    assert [(e.path, e.kind) for e in entries] == [("src", "tree"), ("src/a.py", "blob")]
    assert gateway.get_blob("b1") == "print('hi')\n"
    assert gateway.get_file_content("README.md", "main") == "hello"
    assert gateway.get_file_content("src", "main") is None
    assert gateway.get_file_content("CONTRIBUTING.md", "main") is None


def test_commit_pipeline(monkeypatch: pytest.MonkeyPatch) -> None:
    refs = {"main": "base-sha"}

    def responder(method: str, path: str, payload: dict[str, object] | None) -> object:
        if path.endswith("/git/commits/base-sha"):
            return {"tree": {"sha": "base-tree"}}
        if path.endswith("/git/blobs"):
            return {"sha": "blob-1"}
        if path.endswith("/git/trees"):
            return {"sha": "tree-1"}
        if path.endswith("/git/commits"):
            return {"sha": "commit-1"}
        if "/git/ref/heads/" in path:
            branch = path.split("/git/ref/heads/", 1)[1]
            if branch not in refs:
                raise GitHubNotFoundError("nope", status_code=404)
            return {"object": {"sha": refs[branch]}}
        if method in {"POST", "PATCH"} and "/git/refs" in path:
            return {}
        raise AssertionError((method, path, payload))

    calls = _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    blob = gateway.create_blob("new text")
    tree = gateway.create_tree(
        "base-sha",
        (TreeChange(path="a.txt", blob_sha=blob), TreeChange(path="old.txt", blob_sha=None)),
    )
    commit = gateway.create_commit("Add a", tree, ("base-sha",))
    gateway.set_branch_head("fix/issue-1-x", commit, force=False)
    gateway.set_branch_head("main", commit, force=True)

    assert (blob, tree, commit) == ("blob-1", "tree-1", "commit-1")
    payloads = {(method, path): payload for method, path, payload in calls}
    assert payloads[("POST", "/repos/acme/widgets/git/blobs")] == {
        "content": "new text",
        "encoding": "utf-8",
    }
    assert payloads[("POST", "/repos/acme/widgets/git/trees")] == {
        "base_tree": "base-tree",
        "tree": [
            {"path": "a.txt", "mode": "100644", "type": "blob", "sha": "blob-1"},
            {"path": "old.txt", "mode": "100644", "type": "blob", "sha": None},
        ],
    }
    assert payloads[("POST", "/repos/acme/widgets/git/refs")] == {
        "ref": "refs/heads/fix/issue-1-x",
        "sha": "commit-1",
    }
    assert payloads[("PATCH", "/repos/acme/widgets/git/refs/heads/main")] == {
        "sha": "commit-1",
        "force": True,
    }


def test_create_tree_reports_workflow_permission_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        _ = method, payload
        if "/git/commits/" in path:
            return {"tree": {"sha": "base-tree"}}
        raise GitHubNotFoundError("Not Found", status_code=404)

    _install(monkeypatch, responder)
    gateway = GitHubGateway("acme", "widgets")

    with pytest.raises(GitHubApiError, match="workflow files: .github/workflows/ci.yml"):
        gateway.create_tree("base", (TreeChange(path=".github/workflows/ci.yml", blob_sha="b"),))
    with pytest.raises(GitHubNotFoundError):
        gateway.create_tree("base", (TreeChange(path="src/a.py", blob_sha="b"),))


def test_workflow_runs_jobs_and_failure_tails(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(method: str, path: str, payload: object) -> object:
        if method == "POST":
            assert payload == {"ref": "bot/issue-1-work"}
            return None
        if "/workflows/ci.yml/runs?" in path:
            return {
                "workflow_runs": [
                    {"id": 9, "name": "CI", "status": "COMPLETED", "conclusion": "FAILURE"},
                    "junk",
                    {"id": 3, "name": "CI", "status": "in_progress", "conclusion": None},
                ]
            }
        if path.endswith("/runs/9/jobs?per_page=100"):
            return {
                "jobs": [
                    {"id": 2, "name": "test", "status": "completed", "conclusion": "failure"},
                    {"id": 1, "name": "lint", "status": "completed", "conclusion": "success"},
                    {"id": 3, "name": "test", "status": "completed", "conclusion": "cancelled"},
                ]
            }
        raise AssertionError(path)

    calls = _install(monkeypatch, responder)

    def fake_text(self: GitHubGateway, method: str, path: str) -> str:
        _ = self, method
        if "/jobs/3/" in path:
            raise GitHubPollingError("log expired")
        return "one\ntwo\nthree"

    monkeypatch.setattr(GitHubGateway, "_api_text", fake_text)
    gateway = GitHubGateway("acme", "widgets")

    gateway.dispatch_workflow("ci.yml", "bot/issue-1-work")
    runs = gateway.list_workflow_runs("ci.yml", "bot/issue-1-work")
    tails = gateway.get_failed_run_log_tails(9, tail_lines_per_action=2)

    assert calls[0][1] == "/repos/acme/widgets/actions/workflows/ci.yml/dispatches"
    assert [(run.run_id, run.status, run.conclusion) for run in runs] == [
        (3, "in_progress", None),
        (9, "completed", "failure"),
    ]
    assert tails == {"test [job 2]": "two\nthree", "test [job 3]": None}
    with pytest.raises(ValueError):
        gateway.get_failed_run_log_tails(9, tail_lines_per_action=0)


def test_api_json_invokes_gh_api(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], str | None, bool]] = []

    def fake_run(
        cmd: list[str],
        *,
        cwd=None,
        input_text: str | None = None,
        check: bool = True,
        timeout_seconds: float | None = None,
    ) -> str:
        _ = cwd, timeout_seconds
        calls.append((cmd, input_text, check))
        return _http("200 OK", '{"ok": true}', 'ETag: "etag-1"')

    monkeypatch.setattr("savant.github_gateway.run", fake_run)
    gateway = GitHubGateway("acme", "widgets")

    out_get = gateway._api_json("GET", "/path")
    out_post = gateway._api_json("POST", "/path", payload={"k": "v"})

    assert out_get == {"ok": True}
    assert out_post == {"ok": True}
    assert calls[0][0] == ["gh", "api", "--method", "GET", "--include", "/path"]
    assert calls[0][2] is False
    assert calls[1][0][-2:] == ["--input", "-"]
    assert json.loads(calls[1][1] or "") == {"k": "v"}


def test_api_json_get_reuses_cached_payload_on_not_modified(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        if len(calls) == 1:
            return _http("200 OK", '{"value": 7}', 'ETag: "etag-2"')
        return _http("304 Not Modified")

    monkeypatch.setattr("savant.github_gateway.run", fake_run)
    gateway = GitHubGateway("acme", "widgets")

    assert gateway._api_json("GET", "/path") == {"value": 7}
    assert gateway._api_json("GET", "/path") == {"value": 7}
    header_index = calls[1].index("--header")
    assert calls[1][header_index + 1] == 'If-None-Match: "etag-2"'

    with pytest.raises(GitHubPollingError, match="304 for uncached path"):
        gateway._api_json("GET", "/other")


def test_not_modified_answers_with_the_payload_whose_etag_was_sent(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    gateway = GitHubGateway("acme", "widgets")
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        if len(calls) == 1:
            return _http("200 OK", '{"value": 1}', 'ETag: "etag-1"')
        if len(calls) == 2:
            # Another thread refreshes the entry while this request is in flight.
            assert gateway._api_json("GET", "/path") == {"value": 2}
            return _http("304 Not Modified")
        return _http("200 OK", '{"value": 2}', 'ETag: "etag-2"')

    monkeypatch.setattr("savant.github_gateway.run", fake_run)

    assert gateway._api_json("GET", "/path") == {"value": 1}
    assert gateway._api_json("GET", "/path") == {"value": 1}
    assert 'If-None-Match: "etag-1"' in calls[1]
    assert gateway._api_json("GET", "/path") == {"value": 2}
    assert 'If-None-Match: "etag-2"' in calls[3]


@pytest.mark.parametrize(
    "method, status, error_type",
    [
        ("GET", "401 Unauthorized", GitHubAuthenticationError),
        ("POST", "401 Unauthorized", GitHubAuthenticationError),
        ("DELETE", "404 Not Found", GitHubNotFoundError),
        ("GET", "500 Server Error", GitHubPollingError),
        ("POST", "422 Unprocessable Entity", GitHubApiError),
    ],
)
def test_api_json_maps_http_errors(
    monkeypatch: pytest.MonkeyPatch,
    method: str,
    status: str,
    error_type: type[GitHubApiError],
) -> None:
    monkeypatch.setattr(
        "savant.github_gateway.run",
        lambda cmd, **kwargs: _http(status, '{"message": "nope"}'),
    )

    with pytest.raises(error_type) as excinfo:
        GitHubGateway("acme", "widgets")._api_json(method, "/path")

    assert excinfo.value.status_code == int(status.split(" ", 1)[0])
    if method == "POST" and status.startswith("422"):
        assert not isinstance(excinfo.value, GitHubPollingError)


def test_api_json_wraps_malformed_output(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    monkeypatch.setattr("savant.github_gateway.run", lambda cmd, **kwargs: "not-http")
    gateway = GitHubGateway("acme", "widgets")

    with pytest.raises(GitHubPollingError, match="GitHub GET failed for path /path"):
        gateway._api_json("GET", "/path")
    with pytest.raises(GitHubApiError, match="GitHub POST failed") as excinfo:
        gateway._api_json("POST", "/path")

    assert not isinstance(excinfo.value, GitHubPollingError)
    text = capsys.readouterr().err
    assert "event=github_request_failed" in text
    assert "raw_preview=not-http" in text


def test_api_json_handles_empty_and_invalid_bodies(monkeypatch: pytest.MonkeyPatch) -> None:
    bodies = iter(["", "{not json"])
    monkeypatch.setattr(
        "savant.github_gateway.run",
        lambda cmd, **kwargs: _http("200 OK", next(bodies)),
    )
    gateway = GitHubGateway("acme", "widgets")

    assert gateway._api_json("DELETE", "/path") is None
    with pytest.raises(GitHubPollingError, match="invalid JSON"):
        gateway._api_json("GET", "/path")


def test_gh_timeouts_become_gateway_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[object] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        seen.append(kwargs["timeout_seconds"])
        raise CommandError("Command timed out", returncode=-1, stdout="", stderr="")

    monkeypatch.setattr("savant.github_gateway.run", fake_run)
    gateway = GitHubGateway("acme", "widgets")

    with pytest.raises(GitHubPollingError, match="timed out"):
        gateway._api_json("GET", "/path")
    with pytest.raises(GitHubApiError, match="GitHub PATCH timed out") as excinfo:
        gateway._api_json("PATCH", "/path", payload={})

    assert not isinstance(excinfo.value, GitHubPollingError)
    assert seen == [120.0, 120.0]


def test_api_text_returns_body_and_rejects_non_get(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "savant.github_gateway.run",
        lambda cmd, **kwargs: _http("200 OK", "line one\nline two"),
    )
    gateway = GitHubGateway("acme", "widgets")

    assert gateway._api_text("GET", "/logs") == "line one\nline two"
    with pytest.raises(ValueError):
        gateway._api_text("POST", "/logs")


def test_parse_http_response_uses_last_status_block() -> None:
    raw = "HTTP/1.1 100 Continue\r\n\r\nHTTP/2.0 201 Created\r\nX-Thing: a:b\r\nbad header\r\n\r\n{}"
    status, headers, body = _parse_http_response(raw)

    assert status == 201
    assert headers == {"x-thing": "a:b"}
    assert body == "{}"


@pytest.mark.parametrize("raw", ["", "no status", "HTTP/2.0", "HTTP/2.0 abc"])
def test_parse_http_response_rejects_bad_status_output(raw: str) -> None:
    with pytest.raises(RuntimeError):
        _parse_http_response(raw)


def test_parse_http_response_keeps_body_lines_that_look_like_status() -> None:
    raw = "HTTP/2.0 200 OK\nContent-Type: text/plain\n\nstep 1\nHTTP/1.1 502 Bad Gateway\nstep 2"
    status, headers, body = _parse_http_response(raw)

    assert status == 200
    assert headers == {"content-type": "text/plain"}
    assert body == "step 1\nHTTP/1.1 502 Bad Gateway\nstep 2"


def test_decode_content() -> None:
    encoded = base64.b64encode("café".encode()).decode()
    assert _decode_content({"content": encoded, "encoding": "base64"}) == "café"
    assert _decode_content({"content": "plain"}) == "plain"
    with pytest.raises(GitHubPollingError, match="Unsupported"):
        _decode_content({"content": "x", "encoding": "rot13"})
    with pytest.raises(GitHubPollingError, match="malformed"):
        _decode_content({"content": "abc", "encoding": "base64"})


def test_helper_conversion_functions() -> None:
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("x" * 300).endswith("...")
    assert _tail_lines("", max_lines=3) == "<empty>"
    assert _tail_lines("a\nb\nc", max_lines=2) == "b\nc"
    assert _as_object_dict({"a": 1}) == {"a": 1}
    assert _as_object_dict({1: 1}) is None
    assert _as_object_dict([]) is None
    assert _as_string(None) == ""
    assert _as_string(5) == "5"
    assert _as_optional_str(None) is None
    assert _as_optional_str(5) == "5"
    assert _as_login(" Alice ") == "alice"
    assert _as_login(None) == ""
    assert _as_int("12", field="n") == 12
    assert _as_optional_int(None) is None
    with pytest.raises(RuntimeError):
        _as_int(True, field="n")
    with pytest.raises(RuntimeError):
        _as_int("x", field="n")
    with pytest.raises(RuntimeError):
        _as_int(1.5, field="n")
