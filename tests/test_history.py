from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from savant.history import (
    ConversationHistory,
    ConversationTurn,
    HistoryFormatError,
    InMemoryHistoryStore,
    SqliteHistoryStore,
    task_key,
)


def _history() -> ConversationHistory:
    return (
        ConversationHistory(system_prompt="be helpful")
        .with_message({"role": "user", "content": [{"type": "text", "text": "fix it"}]})
        .with_response(
            {
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "id": "t1", "name": "delete_file", "input": {"path": "a"}}
                ],
                "stop_reason": "tool_use",
            }
        )
        .with_message(
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]}
        )
    )


def test_task_key_format() -> None:
    assert task_key("acme", "widgets", 7) == "acme/widgets#7"


def test_history_enforces_alternation() -> None:
    history = ConversationHistory(system_prompt="s").with_message({"role": "user", "content": "a"})
    with pytest.raises(ValueError, match="previous one has no response"):
        history.with_message({"role": "user", "content": "b"})
    with pytest.raises(ValueError, match="no outstanding message"):
        ConversationHistory(system_prompt="s").with_response({"role": "assistant"})


def test_history_json_keeps_pending_turn() -> None:
    history = _history()
    restored = ConversationHistory.from_json(history.to_json())

    assert restored == history
    assert restored.turns[-1] == ConversationTurn(message=history.turns[-1].message, response=None)


@pytest.mark.parametrize(
    "raw, message",
    [
        ("not json", "not valid JSON"),
        ("[]", "must be a JSON object"),
        ('{"system_prompt": "s"}', "needs system_prompt and turns"),
        ('{"system_prompt": "s", "turns": [{"message": 1}]}', "turn 0 has no message"),
        ('{"system_prompt": "s", "turns": [{"message": {}, "response": "x"}]}', "malformed"),
    ],
)
def test_history_from_json_rejects_malformed_payloads(raw: str, message: str) -> None:
    with pytest.raises(HistoryFormatError, match=message):
        ConversationHistory.from_json(raw)


def test_in_memory_store_round_trip() -> None:
    store = InMemoryHistoryStore()
    assert store.load("k") is None

    store.save("k", _history())
    store.save("a", ConversationHistory(system_prompt="other"))

    assert store.load("k") == _history()
    assert store.keys() == ("a", "k")
    store.delete("k")
    store.delete("missing")
    assert store.load("k") is None


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "conversations.db"
    first = SqliteHistoryStore(db_path)
    first.save("acme/widgets#1", ConversationHistory(system_prompt="s"))
    first.save("acme/widgets#1", _history())

    second = SqliteHistoryStore(db_path)
    assert second.load("acme/widgets#1") == _history()
    assert second.keys() == ("acme/widgets#1",)

    with sqlite3.connect(db_path) as conn:
        row = conn.execute(
            "SELECT turn_count FROM conversations WHERE task_key = ?", ("acme/widgets#1",)
        ).fetchone()
    assert row == (2,)

    second.delete("acme/widgets#1")
    assert first.load("acme/widgets#1") is None
    assert first.keys() == ()
