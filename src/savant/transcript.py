from __future__ import annotations

import json
from typing import Final, cast

from savant.conversation import content_blocks
from savant.history import ConversationHistory, Message


_MAX_RESULT_CHARS: Final[int] = 5000
_MAX_SUMMARY_CHARS: Final[int] = 80


def render_markdown(history: ConversationHistory, *, title: str | None = None) -> str:
    """Human-readable markdown for a stored conversation."""
    sections: list[str] = []
    if title:
        sections.append(f"# {title}")
    sections.append("## System prompt\n\n" + _fenced(history.system_prompt))
    for index, turn in enumerate(history.turns, start=1):
        sections.append(f"## Turn {index}")
        sections.append(_render_message("User", turn.message))
        if turn.response is None:
            sections.append("_No response recorded._")
        else:
            sections.append(_render_message("Assistant", turn.response))
    return "\n\n".join(sections) + "\n"


def summarize_tool_call(name: str, tool_input: dict[str, object]) -> str:
    command = tool_input.get("command")
    path = tool_input.get("path")
    if isinstance(command, str) and isinstance(path, str):
        return f"{command} {path}"
    if isinstance(path, str):
        return path
    for key in ("commit_message", "capability", "comment_type", "query"):
        value = tool_input.get(key)
        if isinstance(value, str):
            return _truncate_line(value, _MAX_SUMMARY_CHARS)
    return name


def _render_message(role: str, message: Message) -> str:
    parts = [f"### {role}"]
    stop_reason = message.get("stop_reason")
    if isinstance(stop_reason, str):
        parts[0] += f" (stop_reason: {stop_reason})"
    for block in content_blocks(message):
        kind = block.get("type")
        if kind == "text":
            parts.append(str(block.get("text", "")))
        elif kind == "tool_use":
            name = str(block.get("name", ""))
            raw_input = block.get("input")
            tool_input = cast(dict[str, object], raw_input) if isinstance(raw_input, dict) else {}
            parts.append(
                f"**Tool call** `{name}`: {summarize_tool_call(name, tool_input)}\n\n"
                + _fenced(json.dumps(tool_input, indent=2, sort_keys=True), "json")
            )
        elif kind == "tool_result":
            label = "Tool error" if block.get("is_error") else "Tool result"
            parts.append(f"**{label}** for `{block.get('tool_use_id')}`\n\n" + _fenced(_result_text(block)))
        else:
            parts.append(f"_Unrendered {kind} block._")
    return "\n\n".join(parts)


def _result_text(block: dict[str, object]) -> str:
    content = block.get("content")
    if isinstance(content, list):
        text = "\n".join(
            str(item.get("text", "")) for item in content if isinstance(item, dict)
        )
    else:
        text = "" if content is None else str(content)
    if len(text) > _MAX_RESULT_CHARS:
        return f"{text[:_MAX_RESULT_CHARS]}\n... ({len(text) - _MAX_RESULT_CHARS} more characters)"
    return text


def _fenced(text: str, language: str = "") -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return f"{fence}{language}\n{text}\n{fence}"


def _truncate_line(text: str, limit: int) -> str:
    collapsed = " ".join(text.split())
    return collapsed if len(collapsed) <= limit else f"{collapsed[:limit]}..."
