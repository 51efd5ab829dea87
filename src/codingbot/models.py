"""Core data models for coding-bot."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


# ── Interaction & Session State ──────────────────────────────────────────────


class InteractionKind(str, enum.Enum):
    """What an inbound event asks the bot to do."""

    ASSIGNMENT = "assignment"
    QUESTION = "question"
    RESUME = "resume"


class SessionState(str, enum.Enum):
    """Session lifecycle states.

    new → provisioning → running ⇄ awaiting_input → {complete | error | aborted}
    """

    NEW = "new"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[SessionState] = frozenset(
    {SessionState.COMPLETE, SessionState.ERROR, SessionState.ABORTED}
)

# Allowed transitions. Any non-terminal state may be aborted.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NEW: frozenset(
        {SessionState.PROVISIONING, SessionState.RUNNING, SessionState.ERROR, SessionState.ABORTED}
    ),
    SessionState.PROVISIONING: frozenset(
        {SessionState.RUNNING, SessionState.ERROR, SessionState.ABORTED}
    ),
    SessionState.RUNNING: frozenset(
        {
            SessionState.AWAITING_INPUT,
            SessionState.COMPLETE,
            SessionState.ERROR,
            SessionState.ABORTED,
        }
    ),
    SessionState.AWAITING_INPUT: frozenset(
        {SessionState.RUNNING, SessionState.ERROR, SessionState.ABORTED}
    ),
    SessionState.COMPLETE: frozenset(),
    SessionState.ERROR: frozenset(),
    SessionState.ABORTED: frozenset(),
}


# ── Tracker Events ───────────────────────────────────────────────────────────


class TrackerEvent(BaseModel):
    """Raw agent-session webhook event from the ticket tracker."""

    delivery_id: str | None = Field(default=None, description="Linear-Delivery header value")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> str | None:
        """Webhook type, e.g. 'AgentSessionEvent'."""
        return self.payload.get("type")

    @property
    def action(self) -> str | None:
        """e.g. 'created', 'prompted'."""
        return self.payload.get("action")

    @property
    def organization_id(self) -> str | None:
        return self.payload.get("organizationId")

    @property
    def agent_session(self) -> dict:
        return self.payload.get("agentSession") or {}

    @property
    def agent_activity(self) -> dict:
        return self.payload.get("agentActivity") or {}

    @property
    def session_id(self) -> str | None:
        return self.agent_session.get("id")

    @property
    def issue(self) -> dict:
        return self.agent_session.get("issue") or {}

    @property
    def issue_id(self) -> str | None:
        return self.issue.get("id")

    @property
    def ticket_id(self) -> str:
        """Human-readable ticket identifier, e.g. 'ENG-123'."""
        return self.issue.get("identifier") or "unknown"

    @property
    def previous_comments(self) -> list[dict]:
        return self.payload.get("previousComments") or []

    @property
    def comment_body(self) -> str | None:
        comment = self.agent_session.get("comment") or {}
        return comment.get("body")

    @property
    def prompt_body(self) -> str | None:
        """Body of the user prompt carried by a follow-up activity, if any."""
        content = self.agent_activity.get("content") or {}
        return content.get("body") or self.agent_activity.get("body")

    @property
    def signal(self) -> str | None:
        return self.agent_activity.get("signal") or self.payload.get("signal")

    @property
    def is_stop(self) -> bool:
        return self.signal == "stop"

    @property
    def status(self) -> str | None:
        return self.agent_session.get("status")

    @property
    def dedup_key(self) -> str:
        """Identity of the logical event, stable across redeliveries."""
        if self.delivery_id:
            return self.delivery_id
        return f"{self.session_id}:{self.action or ''}:{self.agent_activity.get('id') or ''}"


# ── Activities ───────────────────────────────────────────────────────────────


class ActivityKind(str, enum.Enum):
    """Outbound activity kinds mirrored onto the ticket's session thread."""

    THOUGHT = "thought"
    ACTION = "action"
    RESPONSE = "response"
    ELICITATION = "elicitation"
    ERROR = "error"


class ActivityContent(BaseModel):
    """Content of a single outbound activity."""

    kind: ActivityKind
    body: str | None = None
    action: str | None = None
    parameter: str | None = None
    result: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the tracker's activity content shape."""
        if self.kind is ActivityKind.ACTION:
            data: dict[str, Any] = {
                "type": self.kind.value,
                "action": self.action or "",
                "parameter": self.parameter,
            }
            if self.result is not None:
                data["result"] = self.result
            return data
        return {"type": self.kind.value, "body": self.body or ""}

    @classmethod
    def thought(cls, body: str) -> "ActivityContent":
        return cls(kind=ActivityKind.THOUGHT, body=body)

    @classmethod
    def response(cls, body: str) -> "ActivityContent":
        return cls(kind=ActivityKind.RESPONSE, body=body)

    @classmethod
    def elicitation(cls, body: str) -> "ActivityContent":
        return cls(kind=ActivityKind.ELICITATION, body=body)

    @classmethod
    def error(cls, body: str) -> "ActivityContent":
        return cls(kind=ActivityKind.ERROR, body=body)

    @classmethod
    def tool_action(cls, action: str, parameter: str | None) -> "ActivityContent":
        return cls(kind=ActivityKind.ACTION, action=action, parameter=parameter)


# ── Execution Adapter Events ─────────────────────────────────────────────────


class AdapterEventKind(str, enum.Enum):
    ASSISTANT_TEXT = "assistant_text"
    TOOL_USE = "tool_use"
    SYSTEM_INIT = "system_init"
    QUESTION = "question"
    RESULT = "result"


class AdapterEvent(BaseModel):
    """One event yielded by the execution adapter."""

    kind: AdapterEventKind
    text: str = ""
    tool_name: str | None = None
    tool_input: str | None = None
    question_id: str | None = None
    tools: list[str] = Field(default_factory=list)
    success: bool | None = None
    errors: list[str] = Field(default_factory=list)


class InputMessage(BaseModel):
    """A message handed to a live execution through the input channel."""

    text: str
    reply_to: str | None = Field(
        default=None, description="Question identifier this message answers"
    )


class PendingQuestion(BaseModel):
    """The last structured question raised mid-execution."""

    question_id: str
    body: str
    asked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Operator View ────────────────────────────────────────────────────────────


class SessionInfo(BaseModel):
    """Read-only view of a registered session."""

    session_id: str
    ticket_id: str
    interaction_kind: InteractionKind
    state: SessionState
    started_at: datetime
    worktree_path: str | None = None
    awaiting_input: bool = False
