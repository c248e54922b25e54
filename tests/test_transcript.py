from __future__ import annotations

from savant.conversation import tool_results_message, user_text_message
from savant.history import ConversationHistory
from savant.transcript import render_markdown, summarize_tool_call

from fakes import text_response, tool_response


def test_render_markdown_lays_out_turns() -> None:
    history = (
        ConversationHistory(system_prompt="You are a bot.")
        .with_message(user_text_message("Fix #4"))
        .with_response(
            tool_response(
                ("call-1", "str_replace_based_edit_tool", {"command": "view", "path": "src/a.py"}),
                text="Looking around.",
            )
        )
        .with_message(
            tool_results_message(
                [
                    {"type": "tool_result", "tool_use_id": "call-1", "content": "print(1)"},
                ]
            )
        )
        .with_response(text_response("All done."))
        .with_message(user_text_message("One more thing"))
    )

    text = render_markdown(history, title="acme/widgets#4")

    assert text.startswith("# acme/widgets#4\n\n## System prompt\n\n```\nYou are a bot.\n```")
    assert "## Turn 1\n\n### User\n\nFix #4" in text
    assert "### Assistant (stop_reason: tool_use)\n\nLooking around." in text
    assert "**Tool call** `str_replace_based_edit_tool`: view src/a.py" in text
    assert '"path": "src/a.py"' in text
    assert "**Tool result** for `call-1`\n\n```\nprint(1)\n```" in text
    assert "### Assistant (stop_reason: end_turn)\n\nAll done." in text
    assert text.endswith("## Turn 3\n\n### User\n\nOne more thing\n\n_No response recorded._\n")


def test_render_markdown_marks_errors_and_truncates_long_results() -> None:
    history = ConversationHistory(system_prompt="uses ``` fences").with_message(
        tool_results_message(
            [
                {"type": "tool_result", "tool_use_id": "a", "content": "x" * 5003},
                {
                    "type": "tool_result",
                    "tool_use_id": "b",
                    "is_error": True,
                    "content": [{"type": "text", "text": "boom"}],
                },
                {"type": "image"},
            ]
        )
    )

    text = render_markdown(history)

    assert text.startswith("## System prompt\n\n````\nuses ``` fences\n````")
    assert "... (3 more characters)" in text
    assert "x" * 5001 not in text
    assert "**Tool error** for `b`\n\n```\nboom\n```" in text
    assert "_Unrendered image block._" in text


def test_summarize_tool_call() -> None:
    assert summarize_tool_call("edit", {"command": "create", "path": "a.py"}) == "create a.py"
    assert summarize_tool_call("delete_file", {"path": "a.py"}) == "a.py"
    assert summarize_tool_call("validate_changes", {"commit_message": "Fix\n  the  thing"}) == (
        "Fix the thing"
    )
    assert summarize_tool_call("report_limitation", {"capability": "y" * 90}) == "y" * 80 + "..."
    assert summarize_tool_call("validate_changes", {}) == "validate_changes"
