from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging
import threading
from typing import Literal

from savant.cancellation import CancelledError, raise_if_cancelled
from savant.config import ConfigError
from savant.conversation import (
    Conversation,
    response_text,
    tool_results_message,
    tool_use_blocks,
    user_text_message,
)
from savant.github_gateway import GitHubAuthenticationError
from savant.history import ConversationHistory, HistoryStore
from savant.model_client import ModelAuthenticationError, ModelClient
from savant.models import (
    BOT_LABEL_SPECS,
    BOT_LABELS,
    LABEL_BLOCKED,
    LABEL_TURN,
    LABEL_WORKING,
    BotLabel,
    PullRequest,
)
from savant.observability import log_event, logging_task_context
from savant.platform import PlatformClient
from savant.prompts import (
    build_initial_message,
    build_limitation_comment,
    build_pull_request_body,
    build_pull_request_title,
    build_system_prompt,
    build_unvalidated_changes_message,
)
from savant.tasks import Task, authoritative_label
from savant.tools import LimitationReport, ToolContext, ToolRegistry
from savant.workspace import CommitRef, ValidationWorkspace


LOGGER = logging.getLogger("savant.bot")

LoopState = Literal["done", "blocked"]
TaskOutcomeKind = Literal["published", "closed", "blocked", "skipped"]
WorkspaceFactory = Callable[[Task], ValidationWorkspace]

FATAL_ERRORS: tuple[type[BaseException], ...] = (
    GitHubAuthenticationError,
    ModelAuthenticationError,
    CancelledError,
    ConfigError,
)


class ConversationError(RuntimeError):
    pass


@dataclass(frozen=True)
class LoopResult:
    state: LoopState
    summary: str = ""
    limitation: LimitationReport | None = None


@dataclass(frozen=True)
class TaskOutcome:
    kind: TaskOutcomeKind
    pull_request: PullRequest | None = None
    commit: CommitRef | None = None


class Bot:
    def __init__(
        self,
        *,
        platform: PlatformClient,
        model_client: ModelClient,
        workspace_factory: WorkspaceFactory,
        bot_login: str,
        history_store: HistoryStore | None = None,
        tools: ToolRegistry | None = None,
        max_iterations: int = 500,
    ) -> None:
        self._platform = platform
        self._model_client = model_client
        self._workspace_factory = workspace_factory
        self._history_store = history_store
        self._tools = tools or ToolRegistry()
        self._max_iterations = max_iterations
        self._system_prompt = build_system_prompt(bot_login=bot_login)

    def ensure_labels(self) -> None:
        for spec in BOT_LABEL_SPECS:
            self._platform.ensure_label(spec.name, spec.color, spec.description)

    def run(self, cancel: threading.Event, tasks: Iterable[Task]) -> None:
        """Process tasks one at a time until the iterable ends or a fatal error occurs."""
        for task in tasks:
            raise_if_cancelled(cancel)
            try:
                self.do_task(cancel, task)
            except FATAL_ERRORS:
                raise
            except Exception:  # noqa: BLE001
                # do_task already logged and settled the labels; move on.
                continue

    def claim(self, task: Task) -> bool:
        """Move the task's label to ``bot-working`` if nobody else moved it first.

        A claim that fails after taking the label puts the label back.
        """
        expected = task.attention_label
        if expected is None:
            return False
        current = self._platform.list_issue_labels(task.number)
        if authoritative_label(current) != expected:
            return False
        if not self._platform.remove_label(task.number, expected):
            return False
        try:
            self._platform.add_labels(task.number, (LABEL_WORKING,))
            for stale in current:
                if stale in BOT_LABELS and stale not in (expected, LABEL_WORKING):
                    self._platform.remove_label(task.number, stale)
        except Exception:
            self._release_claim(task.number, expected)
            raise
        return True

    def _release_claim(self, issue_number: int, expected: str) -> None:
        try:
            if expected != LABEL_WORKING:
                self._platform.remove_label(issue_number, LABEL_WORKING)
            self._platform.add_labels(issue_number, (expected,))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "label_revert_failed",
                issue_number=issue_number,
                label=expected,
                error_type=type(exc).__name__,
            )

    def do_task(self, cancel: threading.Event, task: Task) -> TaskOutcome:
        with logging_task_context(task.key):
            try:
                claimed = self.claim(task)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "task_failed",
                    issue_number=task.number,
                    stage="claim",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    resumable=False,
                )
                raise
            if not claimed:
                log_event(LOGGER, "task_claim_lost", issue_number=task.number)
                return TaskOutcome(kind="skipped")
            log_event(LOGGER, "task_claimed", issue_number=task.number)

            conversation: Conversation | None = None
            try:
                workspace = self._workspace_factory(task)
                ctx = ToolContext(
                    task=task, workspace=workspace, platform=self._platform, cancel=cancel
                )
                conversation = self._open_conversation(task, ctx)
                result = self._run_until_settled(cancel, conversation, ctx)
                if result.state == "blocked" and result.limitation is not None:
                    outcome = self._finish_blocked(task, result.limitation)
                else:
                    outcome = self._finish_done(task, ctx, result.summary)
            except Exception as exc:
                self._finish_failed(task, conversation, exc)
                raise

            log_event(
                LOGGER,
                "task_finished",
                issue_number=task.number,
                outcome=outcome.kind,
                pr_number=outcome.pull_request.number if outcome.pull_request else None,
            )
            return outcome

    def _open_conversation(self, task: Task, ctx: ToolContext) -> Conversation:
        history = self._history_store.load(task.key) if self._history_store else None
        if history is not None and history.turns:
            # Tool calls of every turn but the last were executed before the restart.
            for turn in history.turns[:-1]:
                if turn.response is not None:
                    for block in tool_use_blocks(turn.response):
                        self._tools.replay(ctx, block)
            log_event(
                LOGGER,
                "conversation_resumed",
                issue_number=task.number,
                turn_count=len(history.turns),
                staged_paths=len(ctx.workspace.changelist().paths()),
            )
        else:
            history = ConversationHistory(system_prompt=self._system_prompt).with_message(
                user_text_message(build_initial_message(task))
            )

        def persist(updated: ConversationHistory) -> None:
            if self._history_store is not None:
                self._history_store.save(task.key, updated)

        persist(history)
        return Conversation(
            self._model_client,
            history,
            tools=self._tools.definitions(),
            on_update=persist,
        )

    def _run_until_settled(
        self, cancel: threading.Event, conversation: Conversation, ctx: ToolContext
    ) -> LoopResult:
        result = self._run_loop(cancel, conversation, ctx)
        while result.state == "done":
            workspace = ctx.workspace
            if workspace.changelist().is_empty() or workspace.is_validated():
                break
            handle = workspace.trigger_validation(ctx.commit_message or _default_commit_message(ctx.task))
            validation = workspace.await_validation(handle, cancel)
            if validation.passed:
                break
            conversation.add_user_message(
                user_text_message(build_unvalidated_changes_message(validation.diagnostic))
            )
            result = self._run_loop(cancel, conversation, ctx)
        return result

    def _run_loop(
        self, cancel: threading.Event, conversation: Conversation, ctx: ToolContext
    ) -> LoopResult:
        response = conversation.unanswered_response()
        while True:
            if response is None:
                if conversation.sent_count >= self._max_iterations:
                    raise ConversationError(
                        f"conversation exceeded {self._max_iterations} model calls"
                    )
                raise_if_cancelled(cancel)
                response = conversation.send(cancel)

            stop_reason = response.get("stop_reason")
            if stop_reason in ("max_tokens", "refusal"):
                raise ConversationError(f"model stopped with stop_reason={stop_reason}")

            tool_uses = tool_use_blocks(response)
            if not tool_uses:
                return LoopResult(state="done", summary=response_text(response))

            results: list[dict[str, object]] = []
            for block in tool_uses:
                raise_if_cancelled(cancel)
                result_block, outcome = self._tools.execute(ctx, block)
                if outcome.limitation is not None:
                    return LoopResult(state="blocked", limitation=outcome.limitation)
                results.append(result_block)
            conversation.add_user_message(tool_results_message(results))
            response = None

    def _finish_done(self, task: Task, ctx: ToolContext, summary: str) -> TaskOutcome:
        if ctx.workspace.changelist().is_empty():
            self._remove_bot_labels(task.number)
            self._forget_history(task)
            return TaskOutcome(kind="closed")

        commit = ctx.workspace.commit(ctx.commit_message or _default_commit_message(task))
        pull_request = self._publish_pull_request(task, summary)
        self._set_label(task.number, LABEL_TURN)
        self._forget_history(task)
        return TaskOutcome(kind="published", pull_request=pull_request, commit=commit)

    def _finish_blocked(self, task: Task, limitation: LimitationReport) -> TaskOutcome:
        self._set_label(task.number, LABEL_BLOCKED)
        self._platform.post_issue_comment(
            task.number,
            build_limitation_comment(
                capability=limitation.capability,
                reason=limitation.reason,
                suggestions=limitation.suggestions,
            ),
        )
        self._forget_history(task)
        log_event(
            LOGGER,
            "task_blocked",
            issue_number=task.number,
            capability=limitation.capability,
        )
        return TaskOutcome(kind="blocked")

    def _finish_failed(
        self, task: Task, conversation: Conversation | None, exc: Exception
    ) -> None:
        saved = False
        if conversation is not None and self._history_store is not None:
            try:
                self._history_store.save(task.key, conversation.history)
                saved = bool(conversation.history.turns)
            except Exception as save_exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "history_save_failed",
                    issue_number=task.number,
                    error_type=type(save_exc).__name__,
                )
        log_event(
            LOGGER,
            "task_failed",
            issue_number=task.number,
            error_type=type(exc).__name__,
            error=str(exc),
            resumable=saved,
        )
        if saved:
            return
        try:
            self._set_label(task.number, LABEL_TURN)
        except Exception as label_exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "label_revert_failed",
                issue_number=task.number,
                error_type=type(label_exc).__name__,
            )

    def _publish_pull_request(self, task: Task, summary: str) -> PullRequest:
        title = build_pull_request_title(task)
        body = build_pull_request_body(task, summary)
        existing = self._platform.find_pull_request_by_head(task.review_branch)
        if existing is not None:
            self._platform.update_pull_request(existing.number, title=title, body=body)
            return existing
        return self._platform.create_pull_request(
            title=title,
            head=task.review_branch,
            base=task.target_branch,
            body=body,
        )

    def _set_label(self, issue_number: int, label: BotLabel) -> None:
        current = self._platform.list_issue_labels(issue_number)
        if label not in current:
            self._platform.add_labels(issue_number, (label,))
        for other in BOT_LABELS:
            if other != label and other in current:
                self._platform.remove_label(issue_number, other)

    def _remove_bot_labels(self, issue_number: int) -> None:
        for label in self._platform.list_issue_labels(issue_number):
            if label in BOT_LABELS:
                self._platform.remove_label(issue_number, label)

    def _forget_history(self, task: Task) -> None:
        if self._history_store is not None:
            self._history_store.delete(task.key)


def _default_commit_message(task: Task) -> str:
    return f"Address #{task.number}: {task.issue.title}"
