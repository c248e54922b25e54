from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time

from savant.cancellation import sleep_or_cancel
from savant.models import WorkflowRunSnapshot
from savant.observability import log_event
from savant.platform import PlatformClient


LOGGER = logging.getLogger("savant.validation")
_MAX_DIAGNOSTIC_CHARS = 20_000


@dataclass(frozen=True)
class ValidationHandle:
    branch: str
    head_sha: str


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    diagnostic: str
    run_url: str | None = None


class WorkflowValidator:
    """Dispatches a named GitHub Actions workflow and waits for its verdict."""

    def __init__(
        self,
        platform: PlatformClient,
        *,
        workflow: str,
        poll_interval_seconds: float = 30.0,
        timeout_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[threading.Event, float], None] = sleep_or_cancel,
    ) -> None:
        self._platform = platform
        self._workflow = workflow
        self._poll_interval_seconds = poll_interval_seconds
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._sleep = sleep

    @property
    def workflow(self) -> str:
        return self._workflow

    def trigger(self, branch: str, head_sha: str) -> ValidationHandle:
        existing = self._run_for(branch, head_sha)
        if existing is None:
            self._platform.dispatch_workflow(self._workflow, branch)
        log_event(
            LOGGER,
            "validation_triggered",
            workflow=self._workflow,
            branch=branch,
            head_sha=head_sha,
            reused_run=existing is not None,
        )
        return ValidationHandle(branch=branch, head_sha=head_sha)

    def await_result(self, handle: ValidationHandle, cancel: threading.Event) -> ValidationResult:
        deadline = self._clock() + self._timeout_seconds
        while True:
            run = self._run_for(handle.branch, handle.head_sha)
            if run is not None and run.status == "completed":
                result = self._result_for(run)
                log_event(
                    LOGGER,
                    "validation_finished",
                    workflow=self._workflow,
                    run_id=run.run_id,
                    conclusion=run.conclusion,
                    passed=result.passed,
                )
                return result
            remaining = deadline - self._clock()
            if remaining <= 0:
                log_event(
                    LOGGER,
                    "validation_finished",
                    workflow=self._workflow,
                    head_sha=handle.head_sha,
                    passed=False,
                    timed_out=True,
                )
                state = "was never started" if run is None else f"is still {run.status}"
                return ValidationResult(
                    passed=False,
                    diagnostic=(
                        f"Validation timed out after {int(self._timeout_seconds)}s: workflow "
                        f"{self._workflow} {state} for commit {handle.head_sha}."
                    ),
                    run_url=None if run is None else run.html_url,
                )
            self._sleep(cancel, min(self._poll_interval_seconds, remaining))

    def _run_for(self, branch: str, head_sha: str) -> WorkflowRunSnapshot | None:
        matching = [
            run
            for run in self._platform.list_workflow_runs(self._workflow, branch)
            if run.head_sha == head_sha
        ]
        return matching[-1] if matching else None

    def _result_for(self, run: WorkflowRunSnapshot) -> ValidationResult:
        if run.conclusion == "success":
            return ValidationResult(passed=True, diagnostic="All checks passed.", run_url=run.html_url)
        sections = [f"Workflow {run.name or self._workflow} concluded {run.conclusion or 'unknown'}."]
        for job_name, tail in self._platform.get_failed_run_log_tails(run.run_id).items():
            sections.append(f"### {job_name}\n{tail if tail is not None else '<log unavailable>'}")
        diagnostic = "\n\n".join(sections)
        if len(diagnostic) > _MAX_DIAGNOSTIC_CHARS:
            diagnostic = "...\n" + diagnostic[-_MAX_DIAGNOSTIC_CHARS:]
        return ValidationResult(passed=False, diagnostic=diagnostic, run_url=run.html_url)
