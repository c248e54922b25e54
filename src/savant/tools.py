from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
import logging
import re
import threading
from typing import Final, cast

from savant.models import REACTIONS
from savant.observability import log_event
from savant.platform import PlatformClient
from savant.staging import FileNotFoundInTreeError, normalize_path
from savant.tasks import Task
from savant.workspace import ValidationWorkspace


LOGGER = logging.getLogger("savant.tools")

EDIT_TOOL_NAME: Final[str] = "str_replace_based_edit_tool"
VALIDATE_TOOL_NAME: Final[str] = "validate_changes"
LIMITATION_TOOL_NAME: Final[str] = "report_limitation"
_EDITOR_TOOL_TYPE: Final[str] = "text_editor_20250728"
_MAX_SEARCH_CONTEXT_LINES = 10
_MAX_SEARCH_RESULTS = 200


class ToolInputError(ValueError):
    """The model asked for something invalid; reported back to it as a tool error."""


@dataclass(frozen=True)
class LimitationReport:
    capability: str
    reason: str
    suggestions: str


@dataclass(frozen=True)
class ToolOutcome:
    content: str
    is_error: bool = False
    limitation: LimitationReport | None = None


@dataclass
class ToolContext:
    task: Task
    workspace: ValidationWorkspace
    platform: PlatformClient
    cancel: threading.Event
    commit_message: str | None = None


class Tool(ABC):
    name: str

    @abstractmethod
    def definition(self) -> dict[str, object]:
        """Tool definition sent to the model."""

    @abstractmethod
    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        """Execute one call; raise ``ToolInputError`` for bad input."""

    def replay(self, ctx: ToolContext, tool_input: dict[str, object]) -> None:
        """Re-apply the staged effects of a call made before a restart."""


def _require_str(tool_input: dict[str, object], key: str) -> str:
    value = tool_input.get(key)
    if not isinstance(value, str):
        raise ToolInputError(f"{key} is required and must be a string")
    return value


def _optional_str(tool_input: dict[str, object], key: str, default: str = "") -> str:
    value = tool_input.get(key, default)
    if not isinstance(value, str):
        raise ToolInputError(f"{key} must be a string")
    return value


def _int_with_default(
    tool_input: dict[str, object], key: str, default: int, *, minimum: int, maximum: int
) -> int:
    value = tool_input.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ToolInputError(f"{key} must be an integer")
    return max(minimum, min(maximum, value))


def _path(tool_input: dict[str, object]) -> str:
    raw = _require_str(tool_input, "path")
    try:
        path = normalize_path(raw)
    except ValueError as exc:
        raise ToolInputError(str(exc)) from exc
    return path


def _numbered(lines: list[str], start: int) -> str:
    return "\n".join(f"{number:6}\t{line}" for number, line in enumerate(lines, start=start))


class _ReplayableTool(Tool):
    def replay(self, ctx: ToolContext, tool_input: dict[str, object]) -> None:
        try:
            self.run(ctx, tool_input)
        except (ToolInputError, FileNotFoundInTreeError, IsADirectoryError):
            # The original call failed the same way and changed nothing.
            pass


class EditTool(_ReplayableTool):
    name = EDIT_TOOL_NAME

    def definition(self) -> dict[str, object]:
        return {"type": _EDITOR_TOOL_TYPE, "name": self.name}

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        command = _require_str(tool_input, "command")
        path = _path(tool_input)
        fs = ctx.workspace.filesystem
        if command == "view":
            return ToolOutcome(self._view(ctx, path, tool_input.get("view_range")))
        if command == "create":
            if fs.file_exists(path):
                raise ToolInputError(f"{path} already exists; use str_replace to change it")
            ctx.workspace.stage(path, _require_str(tool_input, "file_text"))
            return ToolOutcome(f"Created {path}")
        if command == "str_replace":
            content = fs.read(path)
            old = _require_str(tool_input, "old_str")
            new = _optional_str(tool_input, "new_str")
            count = content.count(old) if old else 0
            if count == 0:
                raise ToolInputError(f"old_str was not found in {path}")
            if count > 1:
                raise ToolInputError(
                    f"old_str occurs {count} times in {path}; include more context to make it unique"
                )
            ctx.workspace.stage(path, content.replace(old, new, 1))
            return ToolOutcome(f"Edited {path}")
        if command == "insert":
            content = fs.read(path)
            lines = content.split("\n")
            insert_line = tool_input.get("insert_line")
            if isinstance(insert_line, bool) or not isinstance(insert_line, int):
                raise ToolInputError("insert_line must be an integer")
            if insert_line < 0 or insert_line > len(lines):
                raise ToolInputError(f"insert_line must be between 0 and {len(lines)}")
            text = tool_input.get("insert_text", tool_input.get("new_str"))
            if not isinstance(text, str):
                raise ToolInputError("insert_text is required and must be a string")
            lines[insert_line:insert_line] = text.split("\n")
            ctx.workspace.stage(path, "\n".join(lines))
            return ToolOutcome(f"Inserted text into {path} after line {insert_line}")
        if command == "undo_edit":
            raise ToolInputError("undo_edit is not supported; edit the file back instead")
        raise ToolInputError(f"unknown command {command!r}")

    def replay(self, ctx: ToolContext, tool_input: dict[str, object]) -> None:
        if tool_input.get("command") == "view":
            return
        super().replay(ctx, tool_input)

    def _view(self, ctx: ToolContext, path: str, view_range: object) -> str:
        fs = ctx.workspace.filesystem
        if fs.is_dir(path):
            entries = fs.list_dir(path)
            header = f"Contents of {path or '.'}:"
            return "\n".join([header, *entries]) if entries else f"{header} (empty)"
        lines = fs.read(path).split("\n")
        start, end = 1, len(lines)
        if view_range is not None:
            if (
                not isinstance(view_range, list)
                or len(view_range) != 2
                or not all(isinstance(v, int) and not isinstance(v, bool) for v in view_range)
            ):
                raise ToolInputError("view_range must be a list of two integers")
            start = max(1, cast(int, view_range[0]))
            end = len(lines) if view_range[1] == -1 else min(len(lines), cast(int, view_range[1]))
            if start > end:
                raise ToolInputError(f"view_range is outside the file ({len(lines)} lines)")
        return _numbered(lines[start - 1 : end], start)


class DeleteFileTool(_ReplayableTool):
    name = "delete_file"

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": "Delete a file from the repository.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Repository-relative file path."}
                },
                "required": ["path"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        path = _path(tool_input)
        if not ctx.workspace.filesystem.file_exists(path):
            raise ToolInputError(f"{path} does not exist")
        ctx.workspace.delete(path)
        return ToolOutcome(f"Deleted {path}")


class SearchInFileTool(Tool):
    name = "search_in_file"

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": "Search one file for a literal string or a regular expression.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "query": {"type": "string"},
                    "use_regex": {"type": "boolean", "default": False},
                    "case_sensitive": {"type": "boolean", "default": True},
                    "context_lines": {"type": "integer", "default": 2, "maximum": 10},
                    "max_results": {"type": "integer", "default": 50, "maximum": 200},
                },
                "required": ["path", "query"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        path = _path(tool_input)
        query = _require_str(tool_input, "query")
        if not query:
            raise ToolInputError("query must not be empty")
        flags = 0 if tool_input.get("case_sensitive", True) is not False else re.IGNORECASE
        pattern_text = query if tool_input.get("use_regex") is True else re.escape(query)
        try:
            pattern = re.compile(pattern_text, flags)
        except re.error as exc:
            raise ToolInputError(f"invalid regular expression: {exc}") from exc
        context = _int_with_default(
            tool_input, "context_lines", 2, minimum=0, maximum=_MAX_SEARCH_CONTEXT_LINES
        )
        limit = _int_with_default(tool_input, "max_results", 50, minimum=1, maximum=_MAX_SEARCH_RESULTS)

        lines = ctx.workspace.filesystem.read(path).split("\n")
        hits = [index for index, line in enumerate(lines) if pattern.search(line)]
        if not hits:
            return ToolOutcome(f"No matches for {query!r} in {path}")
        blocks: list[str] = []
        for index in hits[:limit]:
            first = max(0, index - context)
            blocks.append(_numbered(lines[first : index + context + 1], first + 1))
        summary = f"{len(hits)} matches in {path}"
        if len(hits) > limit:
            summary += f" (showing first {limit})"
        return ToolOutcome("\n--\n".join([summary, *blocks]))


class ValidateChangesTool(Tool):
    name = VALIDATE_TOOL_NAME

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": (
                "Run the repository's validation workflow against all staged changes and "
                "wait for the result. The commit message is used when the changes are published."
            ),
            "input_schema": {
                "type": "object",
                "properties": {"commit_message": {"type": "string"}},
                "required": ["commit_message"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        message = _require_str(tool_input, "commit_message").strip()
        if not message:
            raise ToolInputError("commit_message must not be empty")
        if ctx.workspace.changelist().is_empty():
            return ToolOutcome("There are no staged changes to validate.")
        ctx.commit_message = message
        handle = ctx.workspace.trigger_validation(message)
        result = ctx.workspace.await_validation(handle, ctx.cancel)
        if result.passed:
            return ToolOutcome(f"Validation passed.\n{result.diagnostic}")
        return ToolOutcome(f"Validation failed.\n{result.diagnostic}")

    def replay(self, ctx: ToolContext, tool_input: dict[str, object]) -> None:
        message = tool_input.get("commit_message")
        if isinstance(message, str) and message.strip():
            ctx.commit_message = message.strip()


class PostCommentTool(Tool):
    name = "post_comment"

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": (
                "Post a comment on the issue, on the pull request, or as a reply to a "
                "review comment thread."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "comment_type": {"type": "string", "enum": ["issue", "pr", "review"]},
                    "body": {"type": "string"},
                    "in_reply_to": {
                        "type": "integer",
                        "description": "Review comment id; required for comment_type=review.",
                    },
                },
                "required": ["comment_type", "body"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        comment_type = _require_str(tool_input, "comment_type")
        body = _require_str(tool_input, "body")
        if not body.strip():
            raise ToolInputError("body must not be empty")
        pull_request = ctx.task.pull_request
        if comment_type == "issue":
            ctx.platform.post_issue_comment(ctx.task.number, body)
            return ToolOutcome(f"Posted a comment on issue #{ctx.task.number}")
        if pull_request is None:
            raise ToolInputError("there is no pull request yet; comment on the issue instead")
        pr_number = pull_request.snapshot.number
        if comment_type == "pr":
            ctx.platform.post_issue_comment(pr_number, body)
            return ToolOutcome(f"Posted a comment on pull request #{pr_number}")
        if comment_type == "review":
            reply_to = tool_input.get("in_reply_to")
            if isinstance(reply_to, bool) or not isinstance(reply_to, int):
                raise ToolInputError("in_reply_to must be a review comment id")
            ctx.platform.post_review_comment_reply(pr_number, reply_to, body)
            return ToolOutcome(f"Replied to review comment {reply_to}")
        raise ToolInputError(f"unknown comment_type {comment_type!r}")


class AddReactionTool(Tool):
    name = "add_reaction"

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": "Add a reaction to acknowledge or respond to a comment.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "comment_id": {"type": "integer"},
                    "comment_type": {
                        "type": "string",
                        "enum": ["issue", "pr", "review"],
                        "description": (
                            "issue or pr for conversation comments, review for inline "
                            "review comments."
                        ),
                    },
                    "reaction": {"type": "string", "enum": list(REACTIONS)},
                },
                "required": ["comment_id", "comment_type", "reaction"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        comment_id = tool_input.get("comment_id")
        if isinstance(comment_id, bool) or not isinstance(comment_id, int) or comment_id <= 0:
            raise ToolInputError("comment_id is required and must be a positive integer")
        comment_type = _require_str(tool_input, "comment_type")
        if comment_type not in ("issue", "pr", "review"):
            raise ToolInputError(f"unknown comment_type {comment_type!r}")
        reaction = _require_str(tool_input, "reaction")
        if reaction not in REACTIONS:
            raise ToolInputError(f"reaction must be one of {', '.join(REACTIONS)}")
        ctx.platform.add_reaction(
            comment_id, "review" if comment_type == "review" else "issue", reaction
        )
        return ToolOutcome(f"Added {reaction} reaction to comment {comment_id}")


class ReportLimitationTool(Tool):
    name = LIMITATION_TOOL_NAME

    def definition(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": (
                "Stop working and tell a human that the task needs a capability you do not have."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "capability": {
                        "type": "string",
                        "description": "The capability or access that is missing.",
                    },
                    "reason": {"type": "string"},
                    "suggestions": {"type": "string"},
                },
                "required": ["capability", "reason"],
            },
        }

    def run(self, ctx: ToolContext, tool_input: dict[str, object]) -> ToolOutcome:
        report = LimitationReport(
            capability=_require_str(tool_input, "capability"),
            reason=_require_str(tool_input, "reason"),
            suggestions=_optional_str(tool_input, "suggestions"),
        )
        return ToolOutcome("Limitation reported.", limitation=report)


def default_tools() -> tuple[Tool, ...]:
    return (
        EditTool(),
        DeleteFileTool(),
        SearchInFileTool(),
        ValidateChangesTool(),
        PostCommentTool(),
        AddReactionTool(),
        ReportLimitationTool(),
    )


class ToolRegistry:
    def __init__(self, tools: Sequence[Tool] | None = None) -> None:
        self._tools = {tool.name: tool for tool in (tools if tools is not None else default_tools())}

    def definitions(self) -> list[dict[str, object]]:
        return [tool.definition() for tool in self._tools.values()]

    def execute(self, ctx: ToolContext, block: dict[str, object]) -> tuple[dict[str, object], ToolOutcome]:
        """Run one ``tool_use`` block and build the matching ``tool_result`` block."""
        name = str(block.get("name", ""))
        tool_input = block.get("input")
        tool = self._tools.get(name)
        if tool is None:
            outcome = ToolOutcome(f"unknown tool {name!r}", is_error=True)
        elif not isinstance(tool_input, dict):
            outcome = ToolOutcome("tool input must be an object", is_error=True)
        else:
            try:
                outcome = tool.run(ctx, cast(dict[str, object], tool_input))
            except (ToolInputError, FileNotFoundInTreeError, IsADirectoryError) as exc:
                outcome = ToolOutcome(_input_error_text(exc), is_error=True)
        log_event(LOGGER, "tool_executed", tool=name, is_error=outcome.is_error)
        result: dict[str, object] = {
            "type": "tool_result",
            "tool_use_id": block.get("id"),
            "content": outcome.content,
        }
        if outcome.is_error:
            result["is_error"] = True
        return result, outcome

    def replay(self, ctx: ToolContext, block: dict[str, object]) -> None:
        tool = self._tools.get(str(block.get("name", "")))
        tool_input = block.get("input")
        if tool is not None and isinstance(tool_input, dict):
            tool.replay(ctx, cast(dict[str, object], tool_input))


def _input_error_text(exc: Exception) -> str:
    if isinstance(exc, FileNotFoundInTreeError):
        return f"File not found: {exc}"
    if isinstance(exc, IsADirectoryError):
        return f"Path is a directory: {exc}"
    return str(exc)
