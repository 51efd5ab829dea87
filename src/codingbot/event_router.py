"""Event router: consumes tracker events and hands them to the orchestrator.

Runs as an async consumer loop. Handles:
- Event type filtering (only agent-session events are processed)
- Organization scoping (events from other workspaces are dropped)
- Webhook deduplication (time-windowed, see ``codingbot.dedup``)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from codingbot.models import TrackerEvent

if TYPE_CHECKING:
    from codingbot.dedup import WebhookDeduplicator
    from codingbot.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

AGENT_SESSION_EVENT = "AgentSessionEvent"


class EventRouter:
    """Async consumer loop that routes tracker events to the orchestrator."""

    def __init__(
        self,
        event_queue: asyncio.Queue[TrackerEvent],
        deduplicator: WebhookDeduplicator,
        orchestrator: Orchestrator,
        *,
        organization_id: str | None = None,
    ):
        self.event_queue = event_queue
        self.deduplicator = deduplicator
        self.orchestrator = orchestrator
        self.organization_id = organization_id

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Event router stopped")

    async def _consumer_loop(self) -> None:
        """Dequeue and route events until stopped."""
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self._route_event(event)
            except Exception:
                logger.exception("Error routing event %s", event.dedup_key)

    async def _route_event(self, event: TrackerEvent) -> None:
        """Route a single tracker event."""
        # 1. Event type filter
        if event.event_type and event.event_type != AGENT_SESSION_EVENT:
            logger.debug("Ignoring %s webhook", event.event_type)
            return

        # 2. Organization scope
        if self.organization_id and event.organization_id != self.organization_id:
            logger.warning(
                "Dropping event from unexpected organization %s (expected %s)",
                event.organization_id,
                self.organization_id,
            )
            return

        # 3. Deduplication
        key = event.dedup_key
        if self.deduplicator.seen(key):
            logger.info("Skipping duplicate webhook: %s (session=%s)", key, event.session_id)
            return
        self.deduplicator.record(key)

        logger.info(
            "Routing %s event for session %s (ticket=%s)",
            event.action or "unknown",
            event.session_id,
            event.ticket_id,
        )
        await self.orchestrator.handle_event(event)
