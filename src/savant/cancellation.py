from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when the shared stop signal fires while work is suspended."""


def raise_if_cancelled(cancel: threading.Event) -> None:
    if cancel.is_set():
        raise CancelledError("cancelled")


def sleep_or_cancel(cancel: threading.Event, seconds: float) -> None:
    if seconds <= 0:
        raise_if_cancelled(cancel)
        return
    if cancel.wait(seconds):
        raise CancelledError("cancelled")
