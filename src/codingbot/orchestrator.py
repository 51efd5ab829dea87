"""Orchestrator: drives each session through its lifecycle.

    new → provisioning → running ⇄ awaiting_input → {complete | error | aborted}

Question sessions skip provisioning and run read-only in the main
checkout. Assignments get their own worktree, bootstrapped before the
execution starts.

Every terminal path runs the same cleanup, in order: release the
worktree if one is bound, unregister the session, then send the final
ticket notification. Tracker notifications are best-effort; a failure
is logged and never changes the session outcome.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from pathlib import Path
from typing import Awaitable, Callable

from codingbot.activity import ActivityJournal
from codingbot.adapter import AdapterError, ExecutionAdapter
from codingbot.classifier import classify_interaction
from codingbot.config import BootstrapConfig, BotConfig
from codingbot.environment import BootstrapResult, ProvisioningError, bootstrap_environment
from codingbot.input_channel import InputChannel
from codingbot.models import (
    TRANSITIONS,
    ActivityContent,
    AdapterEvent,
    AdapterEventKind,
    InputMessage,
    InteractionKind,
    PendingQuestion,
    SessionState,
    TrackerEvent,
)
from codingbot.prompts import (
    SYSTEM_PROMPT,
    format_previous_comments,
    implementation_prompt,
    question_prompt,
)
from codingbot.session_registry import Session, SessionRegistry
from codingbot.tracker_client import TrackerClient
from codingbot.worktree import (
    Worktree,
    WorktreeError,
    WorktreeManager,
    generate_branch_name,
    worktree_path,
)

logger = logging.getLogger(__name__)

STOP_ACKNOWLEDGMENT = "Stopped as requested."

Bootstrapper = Callable[[Path, BootstrapConfig], Awaitable[BootstrapResult]]


class InvalidTransition(RuntimeError):
    """A state change the lifecycle does not allow."""


class Orchestrator:
    """Turns tracker events into sessions and runs them to completion."""

    def __init__(
        self,
        config: BotConfig,
        registry: SessionRegistry,
        worktrees: WorktreeManager,
        adapter: ExecutionAdapter,
        *,
        tracker: TrackerClient | None = None,
        journal: ActivityJournal | None = None,
        bootstrapper: Bootstrapper = bootstrap_environment,
    ):
        self.config = config
        self.registry = registry
        self.worktrees = worktrees
        self.adapter = adapter
        self.tracker = tracker
        self.journal = journal
        self.bootstrapper = bootstrapper
        self._background: set[asyncio.Task] = set()

    # ── Event Entry Point ────────────────────────────────────────────────

    async def handle_event(self, event: TrackerEvent) -> None:
        """Route one (already deduplicated) tracker event.

        Everything up to registering a new session is synchronous, so two
        deliveries for the same session id cannot both register.
        """
        session_id = event.session_id
        if not session_id:
            logger.warning("Dropping event without agent session id (action=%s)", event.action)
            return

        if event.is_stop:
            self.stop_session(session_id)
            return

        existing = self.registry.get(session_id)
        kind = classify_interaction(
            has_prior_comments=bool(event.previous_comments),
            comment_body=event.comment_body,
            existing_session_has_pending_question=(
                existing is not None and existing.pending_question is not None
            ),
        )

        if existing is not None:
            if kind is InteractionKind.RESUME:
                self._resume(existing, event)
            else:
                logger.info(
                    "Session already being processed: %s (ticket=%s) — skipping",
                    session_id,
                    existing.ticket_id,
                )
            return

        session = Session(
            session_id=session_id,
            ticket_id=event.ticket_id,
            interaction_kind=kind,
            issue_id=event.issue_id,
        )
        if not self.registry.register(session):
            return
        session.task = asyncio.create_task(
            self._run_session(session, event),
            name=f"session-{session_id}",
        )
        session.task.add_done_callback(lambda _t: self._reap(session))

    def stop_session(self, session_id: str) -> bool:
        """Cancel a session. Unknown ids are logged and otherwise ignored."""
        return self.registry.abort(session_id, "stop")

    async def shutdown(self) -> None:
        """Abort every live session and wait for their cleanup."""
        sessions = self.registry.all()
        for session in sessions:
            session.cancel("shutdown")
        tasks = [s.task for s in sessions if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Orchestrator shut down (%d sessions aborted)", len(sessions))

    # ── Session Lifecycle ────────────────────────────────────────────────

    async def _run_session(self, session: Session, event: TrackerEvent) -> None:
        runtime = self.config.runtime
        self._arm_session_timeout(session)
        try:
            if session.interaction_kind is InteractionKind.ASSIGNMENT:
                await self._set_issue_state(session, self.config.tracker.in_progress_state_id)
                cwd = await self._provision(session)
                prompt = implementation_prompt(
                    session.ticket_id,
                    str(cwd),
                    title=event.issue.get("title"),
                    description=event.issue.get("description"),
                    instructions=event.prompt_body,
                )
                tools = runtime.assignment_tools
                await self._notify(
                    session,
                    ActivityContent.thought(
                        "Analyzing the implementation plan and preparing to execute..."
                    ),
                )
            else:
                self._transition(session, SessionState.RUNNING)
                cwd = self.config.repo.main_checkout
                question = event.prompt_body or event.comment_body or event.issue.get("title") or ""
                prompt = question_prompt(
                    question,
                    format_previous_comments(event.previous_comments),
                    event.ticket_id,
                )
                tools = runtime.question_tools
                await self._notify(session, ActivityContent.thought("Looking into your question..."))

            result = await self._drive(session, prompt, cwd, tools)

            if result.success:
                detail = result.text
                if (
                    session.interaction_kind is InteractionKind.ASSIGNMENT
                    and runtime.commit_on_success
                ):
                    sha = await self.worktrees.commit_and_push(
                        cwd, f"{session.ticket_id}: automated changes"
                    )
                    if sha:
                        detail += f"\n\nPushed {sha[:12]} to `{session.branch_name}`."
                session.outcome_detail = detail
                self._transition(session, SessionState.COMPLETE)
            else:
                errors = "\n".join(result.errors) or "Unknown error"
                session.outcome_detail = f"Implementation encountered issues:\n{errors}"
                self._transition(session, SessionState.ERROR)

        except asyncio.CancelledError:
            self._transition(session, SessionState.ABORTED)
            raise
        except (WorktreeError, ProvisioningError, AdapterError) as e:
            logger.warning("Session %s failed: %s", session.session_id, e)
            session.outcome_detail = str(e)
            self._transition(session, SessionState.ERROR)
        except Exception as e:
            logger.exception("Session %s crashed", session.session_id)
            session.outcome_detail = f"Agent error: {e}"
            self._transition(session, SessionState.ERROR)
        finally:
            await self._finalize(session)

    async def _provision(self, session: Session) -> Path:
        """Create and bootstrap the session's worktree; ends in ``running``."""
        self._transition(session, SessionState.PROVISIONING)
        repo = self.config.repo
        branch = generate_branch_name(session.ticket_id, repo.branch_prefix)
        target = worktree_path(repo.base_path, repo.name, branch)

        owner = self._worktree_owner(str(target))
        if owner is not None:
            raise WorktreeError(
                f"Worktree {target} is already in use by session {owner}; "
                "stop that session before starting another for this ticket."
            )

        # Bind before creating so a half-created worktree is still released.
        session.branch_name = branch
        self.registry.update_worktree(session.session_id, str(target))

        await self._notify(session, ActivityContent.tool_action("Creating worktree", branch))
        worktree = await self._create_worktree(session, branch)

        result = await self.bootstrapper(worktree.path, self.config.bootstrap)
        if not result.success:
            step = result.failed_step
            message = "Environment setup failed"
            if step is not None:
                message += f" at `{step.name}`: {step.error}"
                if step.output:
                    message += f"\n\n{step.output[-1000:]}"
            raise ProvisioningError(message)

        self._transition(session, SessionState.RUNNING)
        return worktree.path

    async def _create_worktree(self, session: Session, branch: str) -> Worktree:
        """Create the worktree, retrying retryable git failures with backoff."""
        repo = self.config.repo
        max_retries = self.config.runtime.worktree_retries
        retry_delay = self.config.runtime.retry_delay

        attempt = 0
        while True:
            try:
                return await self.worktrees.create(
                    repo.base_path, repo.name, branch, repo.base_branch
                )
            except WorktreeError as e:
                if not e.retryable or attempt >= max_retries:
                    raise
                wait_time = retry_delay * (2**attempt)
                logger.warning(
                    "Worktree creation for session %s failed (attempt %d/%d): %s — retrying in %.1fs",
                    session.session_id,
                    attempt + 1,
                    max_retries + 1,
                    e,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                attempt += 1

    async def _drive(
        self, session: Session, prompt: str, cwd: Path, tools: list[str]
    ) -> AdapterEvent:
        """Consume the adapter's event stream until its terminal result."""
        channel: InputChannel[InputMessage] = InputChannel([InputMessage(text=prompt)])
        session.input_channel = channel
        result: AdapterEvent | None = None

        async with aclosing(
            self.adapter.run(channel, cwd=cwd, allowed_tools=tools, system_prompt=SYSTEM_PROMPT)
        ) as events:
            async for event in events:
                if event.kind is AdapterEventKind.ASSISTANT_TEXT:
                    await self._notify(session, ActivityContent.thought(event.text))
                elif event.kind is AdapterEventKind.TOOL_USE:
                    await self._notify(
                        session,
                        ActivityContent.tool_action(event.tool_name or "tool", event.tool_input),
                    )
                elif event.kind is AdapterEventKind.SYSTEM_INIT:
                    logger.info(
                        "Session %s execution initialized with tools: %s",
                        session.session_id,
                        ", ".join(event.tools),
                    )
                elif event.kind is AdapterEventKind.QUESTION:
                    await self._await_input(session, event)
                elif event.kind is AdapterEventKind.RESULT:
                    result = event
                    break

        channel.close()
        if result is None:
            raise AdapterError("No result received from the execution")
        if session.state is SessionState.AWAITING_INPUT:
            # The question timer must not fire during commit and cleanup.
            session.clear_timeout()
            session.pending_question = None
            self._transition(session, SessionState.RUNNING)
            self._arm_session_timeout(session)
        return result

    async def _await_input(self, session: Session, event: AdapterEvent) -> None:
        """Park the session until a resume event answers the question."""
        if session.state is SessionState.AWAITING_INPUT:
            logger.info("Session %s asked another question; replacing the pending one", session.session_id)
        else:
            self._transition(session, SessionState.AWAITING_INPUT)
        session.pending_question = PendingQuestion(
            question_id=event.question_id or f"{session.session_id}-question",
            body=event.text,
        )
        timeout = min(self.config.runtime.question_timeout, self._remaining(session))
        session.arm_timeout(timeout, lambda: self._on_timeout(session))
        await self._notify(session, ActivityContent.elicitation(event.text))

    def _resume(self, session: Session, event: TrackerEvent) -> None:
        pending = session.pending_question
        channel = session.input_channel
        if pending is None or channel is None:
            logger.warning("Resume for session %s with no pending question dropped", session.session_id)
            return
        answer = event.prompt_body
        if not answer:
            logger.warning("Resume for session %s carried no answer — dropped", session.session_id)
            return

        session.clear_timeout()
        session.pending_question = None
        self._transition(session, SessionState.RUNNING)
        channel.push(InputMessage(text=answer, reply_to=pending.question_id))
        self._arm_session_timeout(session)
        logger.info("Session %s resumed with answer to %s", session.session_id, pending.question_id)

    async def _finalize(self, session: Session) -> None:
        """Release everything the session holds, then notify."""
        session.clear_timeout()
        if session.input_channel is not None:
            session.input_channel.close()
        session.pending_question = None

        if session.worktree_path and session.branch_name:
            repo = self.config.repo
            await self.worktrees.remove(repo.base_path, repo.name, session.branch_name)

        self.registry.unregister(session.session_id)

        await self._notify(session, self._final_notification(session))
        if (
            session.state is SessionState.COMPLETE
            and session.interaction_kind is InteractionKind.ASSIGNMENT
        ):
            await self._set_issue_state(session, self.config.tracker.review_state_id)

        logger.info(
            "Session %s finished: %s (ticket=%s, %.1fs)",
            session.session_id,
            session.state.value,
            session.ticket_id,
            session.elapsed(),
        )

    def _final_notification(self, session: Session) -> ActivityContent:
        detail = session.outcome_detail or ""
        if session.state is SessionState.COMPLETE:
            if session.interaction_kind is InteractionKind.ASSIGNMENT:
                return ActivityContent.response(f"Implementation complete!\n\n{detail}".rstrip())
            return ActivityContent.response(detail or "I could not find an answer.")
        if session.state is SessionState.ABORTED:
            if session.stop_reason == "stop":
                return ActivityContent.response(STOP_ACKNOWLEDGMENT)
            if session.stop_reason == "timeout":
                return ActivityContent.error(detail or "Session timed out.")
            return ActivityContent.error("Session interrupted: the service is shutting down.")
        return ActivityContent.error(detail or "Session failed.")

    def _reap(self, session: Session) -> None:
        """Last-resort cleanup for a task cancelled before it ever ran."""
        if self.registry.get(session.session_id) is not session:
            return
        logger.warning("Session %s ended before its cleanup ran — unregistering", session.session_id)
        session.clear_timeout()
        self.registry.unregister(session.session_id)
        if not session.state.is_terminal:
            self._transition(session, SessionState.ABORTED)
        task = asyncio.get_running_loop().create_task(
            self._notify(session, self._final_notification(session))
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Timeouts ─────────────────────────────────────────────────────────

    def _remaining(self, session: Session) -> float:
        return max(self.config.runtime.session_timeout - session.elapsed(), 0.0)

    def _arm_session_timeout(self, session: Session) -> None:
        session.arm_timeout(self._remaining(session), lambda: self._on_timeout(session))

    async def _on_timeout(self, session: Session) -> None:
        if session.state is SessionState.AWAITING_INPUT:
            session.outcome_detail = (
                "Timed out waiting for an answer "
                f"(no reply within {self.config.runtime.question_timeout:g}s)."
            )
        else:
            session.outcome_detail = (
                f"Session timed out after {self.config.runtime.session_timeout:g}s."
            )
        logger.warning("Session %s timed out in state %s", session.session_id, session.state.value)
        self.registry.abort(session.session_id, "timeout")

    # ── Helpers ──────────────────────────────────────────────────────────

    def _transition(self, session: Session, new_state: SessionState) -> None:
        old_state = session.state
        if new_state not in TRANSITIONS[old_state]:
            raise InvalidTransition(
                f"Session {session.session_id}: {old_state.value} → {new_state.value} not allowed"
            )
        session.state = new_state
        logger.info("Session %s: %s → %s", session.session_id, old_state.value, new_state.value)

    def _worktree_owner(self, path: str) -> str | None:
        for other in self.registry.all():
            if other.worktree_path == path:
                return other.session_id
        return None

    async def _notify(self, session: Session, content: ActivityContent) -> None:
        """Mirror an activity to the tracker and the journal. Never raises."""
        delivered = False
        if self.tracker is not None:
            try:
                await self.tracker.create_activity(session.session_id, content)
                delivered = True
            except Exception:
                logger.warning(
                    "Failed to post %s activity for session %s",
                    content.kind.value,
                    session.session_id,
                    exc_info=True,
                )
        if self.journal is not None:
            try:
                await self.journal.record(session.session_id, content, delivered)
            except Exception:
                logger.warning("Failed to journal activity for session %s", session.session_id, exc_info=True)

    async def _set_issue_state(self, session: Session, state_id: str | None) -> None:
        if self.tracker is None or not state_id or not session.issue_id:
            return
        try:
            await self.tracker.update_issue_state(session.issue_id, state_id)
        except Exception:
            logger.warning("Failed to update state of issue %s", session.issue_id, exc_info=True)
