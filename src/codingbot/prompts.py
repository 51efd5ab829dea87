"""Prompt builders for executions."""

from __future__ import annotations

SYSTEM_PROMPT = """\
You are a coding agent working on tickets from the team's issue tracker.

- Work only inside the current working directory.
- Keep changes focused on the ticket; do not refactor unrelated code.
- Run the project's tests or type checks when they exist and fix what you break.
- If a requirement is ambiguous and you cannot make a reasonable choice,
  ask the user with the AskUserQuestion tool instead of guessing.
- Do not commit or push; that happens after you finish.
- End with a short summary of what you changed and why.
"""


def implementation_prompt(
    ticket_id: str,
    worktree_path: str,
    title: str | None = None,
    description: str | None = None,
    instructions: str | None = None,
) -> str:
    """Prompt for an assignment run in a dedicated worktree."""
    parts = [f"# Ticket {ticket_id}" + (f": {title}" if title else "")]
    if description:
        parts.append(f"## Description\n{description}")
    if instructions:
        parts.append(f"## Additional instructions\n{instructions}")
    parts.append(
        f"Implement this ticket in the worktree located at {worktree_path}. "
        "Follow any implementation plan in the description step by step."
    )
    return "\n\n".join(parts)


def question_prompt(
    question: str,
    previous_context: str = "",
    ticket_id: str | None = None,
) -> str:
    """Prompt for a read-only question about the codebase."""
    parts = [
        "The user is asking a question about the codebase. Answer it using the "
        "available read-only tools (Read, Grep, Glob, and git log via Bash)."
    ]
    if previous_context:
        parts.append(f"## Previous conversation context:\n{previous_context}")
    parts.append(f"## User's question:\n{question}")
    if ticket_id:
        parts.append(f"This question is related to ticket {ticket_id}.")
    parts.append(
        "Provide a clear, helpful answer based on the codebase and git history. "
        "Do not make any changes to the code."
    )
    return "\n\n".join(parts)


def format_previous_comments(comments: list[dict]) -> str:
    """Render the tracker's previous comments as plain conversation context."""
    lines = []
    for comment in comments:
        body = (comment.get("body") or "").strip()
        if not body:
            continue
        author = (comment.get("user") or {}).get("name") or "user"
        lines.append(f"{author}: {body}")
    return "\n\n".join(lines)
