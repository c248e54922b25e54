from __future__ import annotations

from dataclasses import replace
import threading

from savant.models import WorkflowRunSnapshot
from savant.validation import ValidationHandle, WorkflowValidator

from fakes import FakePlatform


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, cancel: threading.Event, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _run(platform: FakePlatform, *, sha: str, status: str, conclusion: str | None) -> WorkflowRunSnapshot:
    run = WorkflowRunSnapshot(
        run_id=len(platform.workflow_runs) + 1,
        name="ci.yml",
        status=status,
        conclusion=conclusion,
        html_url="https://ci/run",
        head_sha=sha,
        head_branch="bot/issue-1-work",
        created_at="",
        updated_at="",
    )
    platform.workflow_runs.append(run)
    return run


def test_trigger_dispatches_and_success_passes() -> None:
    platform = FakePlatform()
    platform.seed_branch("bot/issue-1-work", {"a.py": "x"})
    sha = platform.refs["bot/issue-1-work"]
    validator = WorkflowValidator(platform, workflow="ci.yml")

    handle = validator.trigger("bot/issue-1-work", sha)
    result = validator.await_result(handle, threading.Event())

    assert platform.dispatches == [("ci.yml", "bot/issue-1-work")]
    assert result.passed
    assert result.run_url is not None


def test_trigger_reuses_existing_run_for_same_commit() -> None:
    platform = FakePlatform()
    _run(platform, sha="abc", status="in_progress", conclusion=None)
    validator = WorkflowValidator(platform, workflow="ci.yml")

    validator.trigger("bot/issue-1-work", "abc")

    assert platform.dispatches == []


def test_failure_includes_job_log_tails() -> None:
    platform = FakePlatform()
    platform.failure_logs = {"lint": "E501 line too long", "tests": None}
    _run(platform, sha="abc", status="completed", conclusion="failure")
    validator = WorkflowValidator(platform, workflow="ci.yml")

    result = validator.await_result(ValidationHandle("bot/issue-1-work", "abc"), threading.Event())

    assert not result.passed
    assert "concluded failure" in result.diagnostic
    assert "### lint\nE501 line too long" in result.diagnostic
    assert "### tests\n<log unavailable>" in result.diagnostic


def test_polls_until_run_completes() -> None:
    platform = FakePlatform()
    run = _run(platform, sha="abc", status="queued", conclusion=None)
    clock = _FakeClock()

    def sleep(cancel: threading.Event, seconds: float) -> None:
        clock.sleep(cancel, seconds)
        platform.workflow_runs[0] = replace(run, status="completed", conclusion="success")

    validator = WorkflowValidator(
        platform,
        workflow="ci.yml",
        poll_interval_seconds=10,
        timeout_seconds=100,
        clock=clock,
        sleep=sleep,
    )

    result = validator.await_result(ValidationHandle("bot/issue-1-work", "abc"), threading.Event())

    assert result.passed
    assert clock.sleeps == [10]


def test_times_out_with_diagnostic() -> None:
    platform = FakePlatform()
    _run(platform, sha="abc", status="in_progress", conclusion=None)
    clock = _FakeClock()
    validator = WorkflowValidator(
        platform,
        workflow="ci.yml",
        poll_interval_seconds=30,
        timeout_seconds=100,
        clock=clock,
        sleep=clock.sleep,
    )

    result = validator.await_result(ValidationHandle("bot/issue-1-work", "abc"), threading.Event())

    assert not result.passed
    assert result.diagnostic.startswith("Validation timed out after 100s")
    assert "is still in_progress" in result.diagnostic
    assert clock.sleeps == [30, 30, 30, 10]
