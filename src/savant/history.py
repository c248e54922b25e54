from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast


Message = dict[str, object]


class HistoryFormatError(ValueError):
    pass


@dataclass(frozen=True)
class ConversationTurn:
    """One outbound user message and the model's reply, if one was received."""

    message: Message
    response: Message | None = None


@dataclass(frozen=True)
class ConversationHistory:
    system_prompt: str
    turns: tuple[ConversationTurn, ...] = ()

    def with_message(self, message: Message) -> ConversationHistory:
        if self.turns and self.turns[-1].response is None:
            raise ValueError("cannot add a message while the previous one has no response")
        return replace(self, turns=self.turns + (ConversationTurn(message=message),))

    def with_response(self, response: Message) -> ConversationHistory:
        if not self.turns or self.turns[-1].response is not None:
            raise ValueError("no outstanding message to attach a response to")
        last = replace(self.turns[-1], response=response)
        return replace(self, turns=self.turns[:-1] + (last,))

    def to_json(self) -> str:
        return json.dumps(
            {
                "system_prompt": self.system_prompt,
                "turns": [
                    {"message": turn.message, "response": turn.response} for turn in self.turns
                ],
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> ConversationHistory:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise HistoryFormatError(f"stored conversation is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise HistoryFormatError("stored conversation must be a JSON object")
        system_prompt = payload.get("system_prompt")
        raw_turns = payload.get("turns")
        if not isinstance(system_prompt, str) or not isinstance(raw_turns, list):
            raise HistoryFormatError("stored conversation needs system_prompt and turns")
        turns: list[ConversationTurn] = []
        for index, raw_turn in enumerate(raw_turns):
            if not isinstance(raw_turn, dict) or not isinstance(raw_turn.get("message"), dict):
                raise HistoryFormatError(f"turn {index} has no message object")
            response = raw_turn.get("response")
            if response is not None and not isinstance(response, dict):
                raise HistoryFormatError(f"turn {index} has a malformed response")
            turns.append(
                ConversationTurn(
                    message=cast(Message, raw_turn["message"]),
                    response=cast(Message | None, response),
                )
            )
        return cls(system_prompt=system_prompt, turns=tuple(turns))


def task_key(owner: str, repo: str, issue_number: int) -> str:
    return f"{owner}/{repo}#{issue_number}"


class HistoryStore(ABC):
    @abstractmethod
    def load(self, key: str) -> ConversationHistory | None:
        """Saved conversation for ``key``, or None to start fresh."""

    @abstractmethod
    def save(self, key: str, history: ConversationHistory) -> None:
        """Replace the saved conversation for ``key``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Forget the conversation for ``key``; missing keys are ignored."""

    @abstractmethod
    def keys(self) -> tuple[str, ...]:
        """All keys with a saved conversation, sorted."""


class InMemoryHistoryStore(HistoryStore):
    def __init__(self) -> None:
        self._payloads: dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> ConversationHistory | None:
        with self._lock:
            raw = self._payloads.get(key)
        return None if raw is None else ConversationHistory.from_json(raw)

    def save(self, key: str, history: ConversationHistory) -> None:
        raw = history.to_json()
        with self._lock:
            self._payloads[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._payloads.pop(key, None)

    def keys(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._payloads))


class SqliteHistoryStore(HistoryStore):
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    task_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    turn_count INTEGER NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )

    def load(self, key: str) -> ConversationHistory | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM conversations WHERE task_key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return ConversationHistory.from_json(str(row[0]))

    def save(self, key: str, history: ConversationHistory) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(task_key, payload, turn_count, updated_at)
                VALUES(?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                ON CONFLICT(task_key) DO UPDATE SET
                    payload = excluded.payload,
                    turn_count = excluded.turn_count,
                    updated_at = excluded.updated_at
                """,
                (key, history.to_json(), len(history.turns)),
            )

    def delete(self, key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM conversations WHERE task_key = ?", (key,))

    def keys(self) -> tuple[str, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT task_key FROM conversations ORDER BY task_key").fetchall()
        return tuple(str(row[0]) for row in rows)
