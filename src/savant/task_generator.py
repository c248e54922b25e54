from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterator
import logging
import threading
import time

from savant.cancellation import CancelledError
from savant.github_gateway import GitHubAuthenticationError
from savant.models import BOT_LABELS
from savant.observability import log_event
from savant.platform import PlatformClient
from savant.tasks import Task, TaskBuilder, needs_attention


LOGGER = logging.getLogger("savant.task_generator")
_WAKE_SECONDS = 0.5


class _CycleChannel:
    """Hands one poll cycle's tasks from the producer thread to the consumer.

    ``publish`` returns only after the consumer has received every task of the
    cycle, so at most one cycle is ever buffered.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._items: deque[Task] = deque()
        self._error: BaseException | None = None
        self._closed = False

    def publish(self, tasks: list[Task], cancel: threading.Event) -> None:
        with self._cond:
            self._items.extend(tasks)
            self._cond.notify_all()
            while self._items and not self._closed:
                if cancel.is_set():
                    raise CancelledError("cancelled")
                self._cond.wait(_WAKE_SECONDS)

    def fail(self, error: BaseException) -> None:
        with self._cond:
            self._error = error
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._items.clear()
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def receive(self, cancel: threading.Event) -> Task:
        with self._cond:
            while not self._items:
                if self._error is not None:
                    raise self._error
                if cancel.is_set():
                    raise CancelledError("cancelled")
                self._cond.wait(_WAKE_SECONDS)
            task = self._items.popleft()
            self._cond.notify_all()
            return task


class TaskGenerator:
    def __init__(
        self,
        platform: PlatformClient,
        builder: TaskBuilder,
        *,
        bot_login: str,
        poll_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._platform = platform
        self._builder = builder
        self._bot_login = bot_login
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock

    def generate(self, cancel: threading.Event) -> Iterator[Task]:
        """Yield tasks needing attention until cancelled or a fatal platform error.

        Within a cycle tasks come out in ascending issue number. Cancellation and
        authentication failures are raised from the iterator.
        """
        channel = _CycleChannel()
        producer = threading.Thread(
            target=self._produce,
            args=(channel, cancel),
            name="savant-task-generator",
            daemon=True,
        )
        producer.start()
        try:
            while True:
                yield channel.receive(cancel)
        finally:
            channel.close()
            producer.join(timeout=_WAKE_SECONDS * 4)

    def poll_once(self) -> list[Task]:
        """Build every attention-needing task for one cycle; an empty list if the cycle failed."""
        started = self._clock()
        try:
            issues = sorted(
                self._platform.search_assigned_issues(self._bot_login),
                key=lambda issue: issue.number,
            )
            ready: list[Task] = []
            for issue in issues:
                if not any(label in issue.labels for label in BOT_LABELS):
                    continue
                task = self._builder.build(issue)
                if needs_attention(task):
                    ready.append(self._builder.with_repository_context(task))
        except (GitHubAuthenticationError, CancelledError):
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "poll_cycle_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return []
        log_event(
            LOGGER,
            "poll_cycle_finished",
            candidate_count=len(issues),
            ready_count=len(ready),
            duration_seconds=round(self._clock() - started, 3),
        )
        return ready

    def _produce(self, channel: _CycleChannel, cancel: threading.Event) -> None:
        try:
            while not channel.closed:
                tasks = self.poll_once()
                for task in tasks:
                    log_event(LOGGER, "task_emitted", issue_number=task.number)
                channel.publish(tasks, cancel)
                self._wait_for_next_cycle(channel, cancel)
        except Exception as exc:  # noqa: BLE001
            if not isinstance(exc, CancelledError):
                log_event(LOGGER, "task_generator_stopped", error_type=type(exc).__name__)
            channel.fail(exc)

    def _wait_for_next_cycle(self, channel: _CycleChannel, cancel: threading.Event) -> None:
        deadline = self._clock() + self._poll_interval_seconds
        while not channel.closed:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            if cancel.wait(min(remaining, _WAKE_SECONDS)):
                raise CancelledError("cancelled")
