"""Session registry: the single source of truth for in-flight sessions.

Each session owns its cancellation signal, input channel, workspace
binding and watchdog timer. The registry is an explicit instance passed
to every collaborator; there is no module-level singleton.

All mutations are synchronous, so a ``has()`` followed by ``register()``
within the same event-loop turn cannot interleave with another delivery.
Callers must not put an ``await`` between the two.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from codingbot.input_channel import InputChannel
from codingbot.models import (
    InputMessage,
    InteractionKind,
    PendingQuestion,
    SessionInfo,
    SessionState,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One logical unit of work for a single tracker conversation thread."""

    session_id: str
    ticket_id: str
    interaction_kind: InteractionKind
    issue_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.NEW
    worktree_path: str | None = None
    branch_name: str | None = None
    cancellation: asyncio.Event = field(default_factory=asyncio.Event)
    input_channel: InputChannel[InputMessage] | None = None
    pending_question: PendingQuestion | None = None
    timeout_handle: asyncio.Task | None = None
    task: asyncio.Task | None = None
    stop_reason: str | None = None  # "stop" | "timeout"
    outcome_detail: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation.is_set()

    def cancel(self, reason: str = "stop") -> bool:
        """Set the cancellation signal and interrupt the running task.

        Monotonic: only the first call has an effect, and none once the
        session reached a terminal state. Returns True if this call
        cancelled the session.
        """
        if self.cancellation.is_set() or self.state.is_terminal:
            return False
        self.stop_reason = reason
        self.cancellation.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()
        return True

    def arm_timeout(
        self,
        seconds: float,
        on_expire: Callable[[], Awaitable[None]],
    ) -> None:
        """Replace the watchdog timer with one firing after ``seconds``."""
        self.clear_timeout()
        self.timeout_handle = asyncio.create_task(
            _watchdog(seconds, on_expire),
            name=f"watchdog-{self.session_id}",
        )

    def clear_timeout(self) -> None:
        handle, self.timeout_handle = self.timeout_handle, None
        if handle is not None and not handle.done() and handle is not asyncio.current_task():
            handle.cancel()

    def elapsed(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            ticket_id=self.ticket_id,
            interaction_kind=self.interaction_kind,
            state=self.state,
            started_at=self.started_at,
            worktree_path=self.worktree_path,
            awaiting_input=self.pending_question is not None,
        )


async def _watchdog(seconds: float, on_expire: Callable[[], Awaitable[None]]) -> None:
    try:
        await asyncio.sleep(seconds)
    except asyncio.CancelledError:
        return  # cleared on a state transition
    await on_expire()


class SessionRegistry:
    """In-memory registry enforcing at most one live session per id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def register(self, session: Session) -> bool:
        """Insert a session. A duplicate id is logged and ignored."""
        if session.session_id in self._sessions:
            logger.warning(
                "Session %s already registered — ignoring duplicate registration",
                session.session_id,
            )
            return False
        self._sessions[session.session_id] = session
        logger.info(
            "Session registered: %s (ticket=%s, kind=%s)",
            session.session_id,
            session.ticket_id,
            session.interaction_kind.value,
        )
        return True

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def update_worktree(self, session_id: str, worktree_path: str) -> bool:
        """Bind a workspace path to an already-registered session."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Cannot bind worktree to unknown session %s", session_id)
            return False
        session.worktree_path = worktree_path
        logger.debug("Session %s bound to worktree %s", session_id, worktree_path)
        return True

    def abort(self, session_id: str, reason: str = "stop") -> bool:
        """Set a session's cancellation signal.

        Returns False if the session is absent; it has already finished,
        which is not an error.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.info("Abort requested for %s but no such session (already finished)", session_id)
            return False
        if session.cancel(reason):
            logger.info("Session %s aborted (reason=%s)", session_id, reason)
        return True

    def unregister(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("Session unregistered: %s", session_id)
        return True

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def list_sessions(self) -> list[SessionInfo]:
        """Read-only snapshot for operators."""
        return [s.to_info() for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)
