from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO


VerboseMode = Literal["low", "high"]

ROOT_LOGGER_NAME: Final[str] = "savant"
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_MAX_VALUE_CHARS: Final[int] = 120

# Events that survive ``--verbose low``; warnings and errors always do.
MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "task_emitted",
        "task_claimed",
        "task_claim_lost",
        "task_finished",
        "task_failed",
        "validation_finished",
        "github_pr_created",
        "github_commit_created",
        "model_rate_limited",
        "poll_cycle_failed",
    }
)

_current_task: ContextVar[str | None] = ContextVar("savant_current_task", default=None)


def configure_logging(verbose: bool | str | None, *, state_dir: Path | None = None) -> None:
    """Route ``savant.*`` loggers to stderr (and a daily file under ``state_dir/logs``).

    ``None``/``False`` silences everything, ``"low"`` keeps milestones and
    warnings, ``True``/``"high"`` keeps every event. Safe to call repeatedly.
    """
    mode = parse_verbose_mode(verbose)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.propagate = False
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if mode == "low":
            handler.addFilter(_milestones_only)
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def parse_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized == "low":
        return "low"
    if normalized == "high":
        return "high"
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


@contextmanager
def logging_task_context(task_key: str) -> Iterator[None]:
    """Tag events logged on this thread with ``task=<task_key>``."""
    token = _current_task.set(task_key)
    try:
        yield
    finally:
        _current_task.reset(token)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    task_key = _current_task.get()
    if task_key is not None:
        fields.setdefault("task", task_key)
    rendered = [f"event={_render_value(event)}"]
    rendered.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    logger.info(" ".join(rendered), extra={"savant_event": event})


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif value is True or value is False:
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_CHARS:
            text = text[:_MAX_VALUE_CHARS] + "..."
        text = text or "<empty>"
    else:
        text = f"<{type(value).__name__}>"
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _milestones_only(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, "savant_event", None) in MILESTONE_EVENTS


class DailyLogFileHandler(logging.Handler):
    """Append records to ``<logs_dir>/<UTC date>.log``, rolling over at midnight UTC."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self._clock = clock
        self._stream: TextIO | None = None
        self._stream_date: str | None = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            stream = self._open_for(self._clock().strftime("%Y-%m-%d"))
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        with self.lock:  # type: ignore[union-attr]
            if self._stream is not None:
                self._stream.close()
                self._stream = None
                self._stream_date = None
            super().close()

    def _open_for(self, date: str) -> TextIO:
        if self._stream is not None and self._stream_date == date:
            return self._stream
        if self._stream is not None:
            self._stream.close()
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._stream = (self.logs_dir / f"{date}.log").open("a", encoding="utf-8")
        self._stream_date = date
        return self._stream
