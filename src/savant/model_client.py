from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
import logging
import threading
from typing import Final, cast

import httpx

from savant.cancellation import CancelledError
from savant.history import Message
from savant.observability import log_event
from savant.transport import RateLimitedTransport


LOGGER = logging.getLogger("savant.model_client")

ANTHROPIC_MESSAGES_URL: Final[str] = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION: Final[str] = "2023-06-01"
_CANCEL_CHECK_SECONDS = 0.5


class ModelServiceError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelAuthenticationError(ModelServiceError):
    """The API key was rejected. Retrying will not help."""


class ModelClient(ABC):
    @abstractmethod
    def send(
        self,
        *,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, object]],
        cancel: threading.Event,
    ) -> Message:
        """Send the conversation and return the assistant message.

        Must return promptly with ``CancelledError`` once ``cancel`` is set.
        """


class AnthropicModelClient(ModelClient):
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int,
        cancel: threading.Event,
        api_url: str = ANTHROPIC_MESSAGES_URL,
        timeout_seconds: float = 600.0,
        max_rate_limit_retries: int = 10,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._api_url = api_url
        self._client = httpx.Client(
            transport=RateLimitedTransport(
                transport or httpx.HTTPTransport(),
                cancel=cancel,
                max_retries=max_rate_limit_retries,
            ),
            timeout=httpx.Timeout(timeout_seconds, connect=30.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="savant-model")

    def send(
        self,
        *,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, object]],
        cancel: threading.Event,
    ) -> Message:
        payload: dict[str, object] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system_prompt,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        future = self._executor.submit(self._post, payload)
        while True:
            try:
                return future.result(timeout=_CANCEL_CHECK_SECONDS)
            except FutureTimeoutError:
                if cancel.is_set():
                    # Closing the pool aborts the in-flight request on the worker thread.
                    self.close()
                    raise CancelledError("cancelled while waiting for the model") from None

    def close(self) -> None:
        self._client.close()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _post(self, payload: dict[str, object]) -> Message:
        messages = cast(list[object], payload["messages"])
        log_event(LOGGER, "model_request_started", model=self._model, message_count=len(messages))
        try:
            response = self._client.post(self._api_url, json=payload)
        except httpx.HTTPError as exc:
            log_event(LOGGER, "model_request_failed", error_type=type(exc).__name__, error=str(exc))
            raise ModelServiceError(f"model request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ModelAuthenticationError(
                f"model service rejected credentials ({response.status_code})",
                status_code=response.status_code,
            )
        if not response.is_success:
            log_event(
                LOGGER,
                "model_request_failed",
                status_code=response.status_code,
                body_preview=response.text[:240],
            )
            raise ModelServiceError(
                f"model service returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ModelServiceError("model service returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ModelServiceError("model service returned a non-object response")
        usage = body.get("usage")
        usage_obj = cast(dict[str, object], usage) if isinstance(usage, dict) else {}
        log_event(
            LOGGER,
            "model_request_finished",
            stop_reason=body.get("stop_reason"),
            input_tokens=usage_obj.get("input_tokens"),
            output_tokens=usage_obj.get("output_tokens"),
        )
        return cast(Message, body)
