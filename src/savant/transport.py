from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging
import math
import threading

import httpx

from savant.cancellation import sleep_or_cancel
from savant.observability import log_event


LOGGER = logging.getLogger("savant.transport")

Sleeper = Callable[[threading.Event, float], None]


class RateLimitedTransport(httpx.BaseTransport):
    """Retry HTTP 429 responses after the server's ``retry-after`` delay.

    The request body is read into memory before the first attempt so it can be
    replayed unchanged. Any other status code, and any transport exception, is
    handed back to the caller as is.
    """

    def __init__(
        self,
        inner: httpx.BaseTransport,
        *,
        cancel: threading.Event,
        max_retries: int = 10,
        default_retry_seconds: float = 5.0,
        sleep: Sleeper = sleep_or_cancel,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._inner = inner
        self._cancel = cancel
        self._max_retries = max_retries
        self._default_retry_seconds = default_retry_seconds
        self._sleep = sleep
        self._now = now

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        body = request.read()
        attempt = 0
        while True:
            replay = httpx.Request(
                request.method,
                request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            response = self._inner.handle_request(replay)
            if response.status_code != 429 or attempt >= self._max_retries:
                return response

            delay = parse_retry_after(response.headers.get("retry-after"), now=self._now())
            if delay is None:
                delay = self._default_retry_seconds
            response.close()
            attempt += 1
            log_event(
                LOGGER,
                "model_rate_limited",
                url=str(request.url),
                attempt=attempt,
                retry_after_seconds=delay,
            )
            self._sleep(self._cancel, delay)

    def close(self) -> None:
        self._inner.close()


def parse_retry_after(value: str | None, *, now: datetime) -> float | None:
    """Seconds to wait for a ``retry-after`` header given as seconds or an HTTP-date."""
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())
