from __future__ import annotations

import argparse
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
import logging
import os
from pathlib import Path
import signal
import sys
import threading

from savant.bot import FATAL_ERRORS, Bot
from savant.cancellation import CancelledError
from savant.config import (
    AppConfig,
    ConfigError,
    load_config,
    parse_repo_full_name,
    resolve_api_key,
)
from savant.github_gateway import GitHubGateway
from savant.history import HistoryStore, SqliteHistoryStore
from savant.model_client import AnthropicModelClient
from savant.models import LABEL_TURN
from savant.observability import configure_logging, log_event
from savant.platform import PlatformClient
from savant.task_generator import TaskGenerator
from savant.tasks import Task, TaskBuilder, TaskBuildError
from savant.transcript import render_markdown
from savant.transcript_tui import run_transcript_tui
from savant.validation import WorkflowValidator
from savant.workspace import RemoteValidationWorkspace, ValidationWorkspace


LOGGER = logging.getLogger("savant.cli")
_EXIT_FAILURE = 1
_EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="savant")
    subparsers = parser.add_subparsers(dest="command", required=True)

    oneshot_parser = subparsers.add_parser(
        "oneshot", help="Work on a single issue or pull request, then exit"
    )
    _add_common_arguments(oneshot_parser)
    oneshot_parser.add_argument(
        "--repo",
        type=str,
        help="Repository as owner/name; defaults to [repo] in the config file",
    )
    target = oneshot_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--issue", type=int, help="Issue number to work on")
    target.add_argument("--pr", type=int, help="Pull request opened by the bot to revisit")

    poll_parser = subparsers.add_parser(
        "poll", help="Poll for assigned issues and work on them until stopped"
    )
    _add_common_arguments(poll_parser)
    poll_parser.add_argument(
        "--poll-interval",
        type=int,
        help="Seconds between poll cycles; overrides runtime.poll_interval_seconds",
    )
    poll_parser.add_argument(
        "--history-db",
        type=Path,
        help="SQLite file for resumable conversations; overrides runtime.history_db",
    )

    transcripts_parser = subparsers.add_parser(
        "transcripts", help="Browse stored conversations"
    )
    _add_common_arguments(transcripts_parser)
    transcripts_parser.add_argument(
        "--show",
        type=str,
        metavar="KEY",
        help="Print one conversation (owner/repo#n) as markdown instead of opening the viewer",
    )
    transcripts_parser.add_argument("--history-db", type=Path)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("savant.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Log to stderr; 'low' keeps only milestone events",
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        config = _apply_overrides(load_config(args.config), args)
    except ConfigError as exc:
        print(f"savant: {exc}", file=sys.stderr)
        raise SystemExit(_EXIT_FAILURE) from exc
    configure_logging(args.verbose, state_dir=config.runtime.state_dir)

    if args.command == "transcripts":
        _cmd_transcripts(config, show=args.show)
        return

    cancel = threading.Event()
    try:
        with _cancel_on_signals(cancel):
            if args.command == "oneshot":
                _cmd_oneshot(config, args, cancel)
                return
            if args.command == "poll":
                _cmd_poll(config, cancel)
                return
    except CancelledError as exc:
        log_event(LOGGER, "shutdown", reason="cancelled")
        raise SystemExit(_EXIT_CANCELLED) from exc
    except FATAL_ERRORS as exc:
        log_event(LOGGER, "shutdown", reason="fatal_error", error_type=type(exc).__name__)
        print(f"savant: {exc}", file=sys.stderr)
        raise SystemExit(_EXIT_FAILURE) from exc
    except TaskBuildError as exc:
        print(f"savant: {exc}", file=sys.stderr)
        raise SystemExit(_EXIT_FAILURE) from exc

    raise RuntimeError(f"Unknown command: {args.command}")


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    runtime = config.runtime
    poll_interval = getattr(args, "poll_interval", None)
    if poll_interval is not None:
        if poll_interval < 5:
            raise ConfigError("--poll-interval must be >= 5")
        runtime = replace(runtime, poll_interval_seconds=poll_interval)
    history_db = getattr(args, "history_db", None)
    if history_db is not None:
        runtime = replace(runtime, history_db=history_db, enable_history=True)
    repo_arg = getattr(args, "repo", None)
    repo = config.repo
    if repo_arg is not None:
        owner, name = parse_repo_full_name(repo_arg)
        repo = replace(repo, owner=owner, name=name)
    return replace(config, runtime=runtime, repo=repo)


def _cmd_oneshot(config: AppConfig, args: argparse.Namespace, cancel: threading.Event) -> None:
    platform = GitHubGateway(config.repo.owner, config.repo.name)
    builder = TaskBuilder(platform, bot_login=config.repo.bot_login)
    if args.issue is not None:
        task = builder.build_for_issue(int(args.issue))
    else:
        task = builder.build_for_pull_request(int(args.pr))
    task = _ensure_claimable(platform, task)

    bot, close = build_bot(config, platform, cancel, history_store=None)
    try:
        bot.ensure_labels()
        outcome = bot.do_task(cancel, task)
    finally:
        close()
    if outcome.pull_request is not None:
        print(f"{outcome.kind}: {outcome.pull_request.html_url}")
    else:
        print(outcome.kind)


def _cmd_poll(config: AppConfig, cancel: threading.Event) -> None:
    platform = GitHubGateway(config.repo.owner, config.repo.name)
    builder = TaskBuilder(platform, bot_login=config.repo.bot_login)
    generator = TaskGenerator(
        platform,
        builder,
        bot_login=config.repo.bot_login,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
    )
    history_store = (
        SqliteHistoryStore(config.runtime.history_db_path)
        if config.runtime.enable_history
        else None
    )
    bot, close = build_bot(config, platform, cancel, history_store=history_store)
    log_event(
        LOGGER,
        "poll_started",
        repo=config.repo.full_name,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
        history=history_store is not None,
    )
    try:
        bot.ensure_labels()
        bot.run(cancel, generator.generate(cancel))
    finally:
        close()


def _cmd_transcripts(config: AppConfig, *, show: str | None) -> None:
    store = SqliteHistoryStore(config.runtime.history_db_path)
    if show is None:
        run_transcript_tui(store)
        return
    history = store.load(show)
    if history is None:
        print(f"savant: no stored conversation for {show}", file=sys.stderr)
        raise SystemExit(_EXIT_FAILURE)
    print(render_markdown(history, title=show), end="")


def build_bot(
    config: AppConfig,
    platform: PlatformClient,
    cancel: threading.Event,
    *,
    history_store: HistoryStore | None,
) -> tuple[Bot, Callable[[], None]]:
    """Compose the engine for one repository; the callable releases the model client."""
    model_client = AnthropicModelClient(
        api_key=resolve_api_key(config.model, os.environ),
        model=config.model.model,
        max_tokens=config.model.max_tokens,
        cancel=cancel,
        api_url=config.model.api_url,
        timeout_seconds=config.model.timeout_seconds,
        max_rate_limit_retries=config.model.max_rate_limit_retries,
    )
    validator = (
        WorkflowValidator(
            platform,
            workflow=config.validation.workflow,
            poll_interval_seconds=config.validation.poll_interval_seconds,
            timeout_seconds=config.validation.timeout_seconds,
        )
        if config.validation.workflow is not None
        else None
    )

    def workspace_factory(task: Task) -> ValidationWorkspace:
        return RemoteValidationWorkspace(
            platform,
            validator=validator,
            target_branch=task.target_branch,
            review_branch=task.review_branch,
            work_branch=task.work_branch,
        )

    bot = Bot(
        platform=platform,
        model_client=model_client,
        workspace_factory=workspace_factory,
        bot_login=config.repo.bot_login,
        history_store=history_store,
        max_iterations=config.model.max_iterations,
    )
    return bot, model_client.close


def _ensure_claimable(platform: PlatformClient, task: Task) -> Task:
    """One-shot runs work on the item even when no bot label is set yet."""
    if task.attention_label is not None:
        return task
    platform.add_labels(task.number, (LABEL_TURN,))
    issue = replace(task.issue, labels=task.issue.labels + (LABEL_TURN,))
    return replace(task, issue=issue)


@contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    def handler(signum: int, frame: object) -> None:
        log_event(LOGGER, "shutdown_requested", signal=signal.Signals(signum).name)
        cancel.set()

    previous = {
        signum: signal.signal(signum, handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)
