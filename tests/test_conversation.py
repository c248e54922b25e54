from __future__ import annotations

import threading

import pytest

from savant.conversation import (
    SUPPRESSED_VALIDATION_TEXT,
    Conversation,
    response_text,
    suppress_stale_validation_results,
    tool_results_message,
    tool_use_blocks,
    user_text_message,
)
from savant.history import ConversationHistory, Message
from savant.tools import VALIDATE_TOOL_NAME

from fakes import FakeModelClient, text_response, tool_response


def _validation_round(call_id: str, result: str) -> list[Message]:
    return [
        {
            "role": "assistant",
            "content": [
                {"type": "tool_use", "id": call_id, "name": VALIDATE_TOOL_NAME, "input": {}}
            ],
        },
        tool_results_message([{"type": "tool_result", "tool_use_id": call_id, "content": result}]),
    ]


def test_only_newest_validation_result_survives() -> None:
    messages = [
        user_text_message("start"),
        *_validation_round("v1", "failed: huge log"),
        *_validation_round("v2", "failed: other log"),
        *_validation_round("v3", "passed"),
    ]

    compacted = suppress_stale_validation_results(messages)

    contents = [
        block["content"]
        for message in compacted
        if message["role"] == "user"
        for block in message["content"]  # type: ignore[union-attr]
        if block.get("type") == "tool_result"
    ]
    assert contents == [SUPPRESSED_VALIDATION_TEXT, SUPPRESSED_VALIDATION_TEXT, "passed"]
    assert messages[2]["content"][0]["content"] == "failed: huge log"  # type: ignore[index]


def test_single_validation_is_left_alone() -> None:
    messages = [user_text_message("start"), *_validation_round("v1", "failed")]
    assert suppress_stale_validation_results(messages) is messages


def test_response_helpers() -> None:
    response = tool_response(("a", "delete_file", {"path": "x"}), text="Deleting")
    assert [block["id"] for block in tool_use_blocks(response)] == ["a"]
    assert response_text(response) == "Deleting"
    assert response_text({"role": "assistant", "content": "plain"}) == "plain"
    assert tool_use_blocks({"role": "assistant"}) == []


def test_send_records_response_and_reports_updates() -> None:
    client = FakeModelClient([text_response("done")])
    updates: list[ConversationHistory] = []
    history = ConversationHistory(system_prompt="sys").with_message(user_text_message("hi"))
    conversation = Conversation(client, history, tools=[{"name": "t"}], on_update=updates.append)

    assert conversation.unanswered_response() is None
    response = conversation.send(threading.Event())

    assert response_text(response) == "done"
    assert conversation.sent_count == 1
    assert conversation.unanswered_response() == response
    assert updates[-1] == conversation.history
    assert client.system_prompts == ["sys"]
    assert client.tool_names == [["t"]]

    conversation.add_user_message(user_text_message("more"))
    assert conversation.unanswered_response() is None
    assert len(updates) == 2


def test_outgoing_messages_send_only_role_and_content() -> None:
    client = FakeModelClient([])
    history = (
        ConversationHistory(system_prompt="sys")
        .with_message(user_text_message("hi"))
        .with_response({**text_response("ok"), "id": "msg_1", "usage": {"input_tokens": 3}})
        .with_message(user_text_message("again"))
    )
    conversation = Conversation(client, history, tools=[], on_update=lambda _h: None)

    assert conversation.outgoing_messages() == [
        user_text_message("hi"),
        {"role": "assistant", "content": [{"type": "text", "text": "ok"}]},
        user_text_message("again"),
    ]


def test_send_without_outstanding_message_is_an_error() -> None:
    history = (
        ConversationHistory(system_prompt="sys")
        .with_message(user_text_message("hi"))
        .with_response(text_response("ok"))
    )
    conversation = Conversation(FakeModelClient([]), history, tools=[], on_update=lambda _h: None)

    with pytest.raises(ValueError, match="no outstanding message"):
        conversation.send(threading.Event())
