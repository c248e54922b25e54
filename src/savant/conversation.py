from __future__ import annotations

from collections.abc import Callable
import threading
from typing import Final, cast

from savant.history import ConversationHistory, Message
from savant.model_client import ModelClient
from savant.tools import VALIDATE_TOOL_NAME


SUPPRESSED_VALIDATION_TEXT: Final[str] = (
    "[Validation result suppressed - see most recent validation for current status]"
)


def user_text_message(text: str) -> Message:
    return {"role": "user", "content": [{"type": "text", "text": text}]}


def tool_results_message(results: list[dict[str, object]]) -> Message:
    return {"role": "user", "content": list(results)}


def content_blocks(message: Message) -> list[dict[str, object]]:
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [cast(dict[str, object], block) for block in content if isinstance(block, dict)]


def tool_use_blocks(response: Message) -> list[dict[str, object]]:
    return [block for block in content_blocks(response) if block.get("type") == "tool_use"]


def response_text(response: Message) -> str:
    texts = [
        str(block.get("text", ""))
        for block in content_blocks(response)
        if block.get("type") == "text"
    ]
    return "\n\n".join(text for text in texts if text.strip())


def suppress_stale_validation_results(messages: list[Message]) -> list[Message]:
    """Blank out every validation result except the newest one.

    Old CI logs are large and describe code that has since changed.
    """
    validation_ids = [
        block.get("id")
        for message in messages
        if message.get("role") == "assistant"
        for block in content_blocks(message)
        if block.get("type") == "tool_use" and block.get("name") == VALIDATE_TOOL_NAME
    ]
    if len(validation_ids) <= 1:
        return messages
    stale = set(validation_ids[:-1])
    compacted: list[Message] = []
    for message in messages:
        if message.get("role") != "user" or not isinstance(message.get("content"), list):
            compacted.append(message)
            continue
        blocks: list[object] = []
        for block in content_blocks(message):
            if block.get("type") == "tool_result" and block.get("tool_use_id") in stale:
                blocks.append({**block, "content": SUPPRESSED_VALIDATION_TEXT})
            else:
                blocks.append(block)
        compacted.append({**message, "content": blocks})
    return compacted


class Conversation:
    """A conversation with the model whose every change is reported to ``on_update``."""

    def __init__(
        self,
        client: ModelClient,
        history: ConversationHistory,
        *,
        tools: list[dict[str, object]],
        on_update: Callable[[ConversationHistory], None],
    ) -> None:
        self._client = client
        self._history = history
        self._tools = tools
        self._on_update = on_update
        self._sent_count = 0

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def sent_count(self) -> int:
        return self._sent_count

    def add_user_message(self, message: Message) -> None:
        self._history = self._history.with_message(message)
        self._on_update(self._history)

    def unanswered_response(self) -> Message | None:
        """The newest model response, unless a message has been added after it."""
        if not self._history.turns:
            return None
        return self._history.turns[-1].response

    def outgoing_messages(self) -> list[Message]:
        messages: list[Message] = []
        for turn in self._history.turns:
            messages.append(turn.message)
            if turn.response is not None:
                messages.append({"role": "assistant", "content": turn.response.get("content", [])})
        return suppress_stale_validation_results(messages)

    def send(self, cancel: threading.Event) -> Message:
        if not self._history.turns or self._history.turns[-1].response is not None:
            raise ValueError("there is no outstanding message to send")
        response = self._client.send(
            system_prompt=self._history.system_prompt,
            messages=self.outgoing_messages(),
            tools=self._tools,
            cancel=cancel,
        )
        self._sent_count += 1
        self._history = self._history.with_response(response)
        self._on_update(self._history)
        return response
