from __future__ import annotations

from savant.tasks import RepositoryContext, Task


_MAX_README_CHARS = 8000
_MAX_STYLE_GUIDE_CHARS = 8000


def build_system_prompt(*, bot_login: str) -> str:
    return f"""
You are {bot_login}, a software engineer who works on GitHub issues assigned to you.

How you work:
- You change the repository only through the provided tools. Edits are staged and
  land as one commit on a pull request when you finish.
- Read the relevant code before changing it, and keep changes focused on the issue.
- Follow the repository's style guides and existing conventions.
- Run validate_changes after editing. If validation fails, read the diagnostic,
  fix the problem and validate again.
- Use post_comment to answer questions from humans or to ask for clarification.
  Reply to each unanswered human comment at most once. Use add_reaction to
  acknowledge a comment that needs no written answer.
- If the task needs something you do not have (credentials, external services,
  a database, information only a human can provide), call report_limitation
  instead of guessing.
- When the work is complete, or there is nothing left to do, reply with a short
  summary of what you changed and why, without calling any tools. That summary
  becomes the pull request description.
""".strip()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated)"


def render_repository_block(task: Task, context: RepositoryContext | None) -> str:
    lines = [f"<repository name={task.issue.repo_full_name!r}>"]
    if context is None:
        lines.append("Repository details were not loaded.")
    else:
        lines.append(f"Main language: {context.language or 'unknown'}")
        lines.append("")
        lines.append("Files:")
        lines.extend(f"- {path}" for path in context.file_tree)
        if context.tree_truncated:
            lines.append("- ... (file list truncated)")
        if context.readme:
            lines.extend(["", "README:", _truncate(context.readme, _MAX_README_CHARS)])
        for guide in context.style_guides:
            lines.extend(
                ["", f"Style guide {guide.path}:", _truncate(guide.content, _MAX_STYLE_GUIDE_CHARS)]
            )
    lines.append("</repository>")
    return "\n".join(lines)


def render_task_block(task: Task) -> str:
    issue = task.issue
    lines = [
        f"<task issue={issue.number}>",
        f"Issue #{issue.number}: {issue.title}",
        f"URL: {issue.html_url}",
        f"Target branch: {task.target_branch}",
        "",
        "Issue body:",
        issue.body or "(empty)",
    ]
    if task.issue_comments:
        lines.extend(["", "Issue comments:"])
        for comment in task.issue_comments:
            lines.append(
                f"- [comment {comment.comment_id}] {comment.user_login} at {comment.created_at}:"
            )
            lines.append(f"  {comment.body}")

    pull_request = task.pull_request
    if pull_request is None:
        lines.extend(["", "There is no pull request for this issue yet."])
    else:
        snapshot = pull_request.snapshot
        lines.extend(
            [
                "",
                f"Pull request #{snapshot.number} ({snapshot.state}) from {snapshot.head_ref}:",
                f"Title: {snapshot.title}",
                snapshot.body or "(empty body)",
            ]
        )
        for review in pull_request.reviews:
            if review.body:
                lines.append(f"- [review {review.review_id}] {review.user_login} {review.state}:")
                lines.append(f"  {review.body}")
        for comment in pull_request.comments:
            lines.append(f"- [pr comment {comment.comment_id}] {comment.user_login}:")
            lines.append(f"  {comment.body}")
        for review_comment in pull_request.review_comments:
            location = review_comment.path
            if review_comment.line is not None:
                location = f"{location}:{review_comment.line}"
            reply = (
                f" (reply to {review_comment.in_reply_to_id})"
                if review_comment.in_reply_to_id is not None
                else ""
            )
            lines.append(
                f"- [review comment {review_comment.comment_id}] {review_comment.user_login} "
                f"on {location}{reply}:"
            )
            lines.append(f"  {review_comment.body}")
    lines.append("</task>")
    return "\n".join(lines)


def build_initial_message(task: Task) -> str:
    return "\n\n".join(
        [
            render_repository_block(task, task.repository),
            render_task_block(task),
            "Work on this task now.",
        ]
    )


def build_unvalidated_changes_message(diagnostic: str) -> str:
    return f"""
Your staged changes have not passed validation, so they cannot be published yet.

Validation output:
{diagnostic}

Fix the problem, run validate_changes again, and finish once it passes.
""".strip()


def build_pull_request_body(task: Task, summary: str) -> str:
    body = summary.strip() or "Automated changes."
    return f"{body}\n\nCloses #{task.issue.number}"


def build_pull_request_title(task: Task) -> str:
    return f"Fix #{task.issue.number}: {task.issue.title}"


def build_limitation_comment(*, capability: str, reason: str, suggestions: str) -> str:
    lines = [
        "## Tool Limitation Report",
        "",
        f"**Missing capability:** {capability}",
        "",
        f"**Reason:** {reason}",
    ]
    if suggestions.strip():
        lines.extend(["", f"**Suggestions:** {suggestions}"])
    lines.extend(["", "I have stopped working on this until a human responds."])
    return "\n".join(lines)
