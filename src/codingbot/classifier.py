"""Interaction classifier: decides what an inbound event asks for.

Assignments arrive with a system-generated delegation comment such as
"This thread is for an agent session with Bot." Anything a human wrote,
or any reply inside an existing thread, is a question. An event for a
session that is waiting on an answer is always a resume.
"""

from __future__ import annotations

import re

from codingbot.models import InteractionKind

# Matches the tracker's fixed delegation comment. Brittle against upstream
# wording changes; there is no structured field to use instead.
DELEGATION_COMMENT_RE = re.compile(r"^This thread is for an agent session with .+\.$")


def is_delegation_comment(body: str) -> bool:
    return DELEGATION_COMMENT_RE.match(body) is not None


def classify_interaction(
    *,
    has_prior_comments: bool,
    comment_body: str | None = None,
    existing_session_has_pending_question: bool = False,
) -> InteractionKind:
    """Classify an event. Pure and deterministic."""
    if existing_session_has_pending_question:
        return InteractionKind.RESUME

    if has_prior_comments:
        return InteractionKind.QUESTION

    if comment_body and not is_delegation_comment(comment_body):
        return InteractionKind.QUESTION

    return InteractionKind.ASSIGNMENT
