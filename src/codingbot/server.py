"""coding-bot server: the FastAPI application that ties all components together.

Startup sequence:
1. Load config (unless one was injected)
2. Initialize the activity journal
3. Start the tracker client
4. Wire registry, worktree manager, adapter and orchestrator
5. Start the Event Router consumer loop
6. Begin accepting webhooks

Shutdown:
1. Stop the Event Router
2. Abort live sessions (each releases its worktree)
3. Close the tracker client and journal
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException

from codingbot import __version__
from codingbot.activity import ActivityJournal
from codingbot.adapter import ClaudeAgentAdapter, ExecutionAdapter
from codingbot.config import BotConfig, load_config
from codingbot.dedup import WebhookDeduplicator
from codingbot.event_router import EventRouter
from codingbot.models import TrackerEvent
from codingbot.orchestrator import Orchestrator
from codingbot.session_registry import SessionRegistry
from codingbot.tracker_client import TrackerClient
from codingbot.webhook import configure as configure_webhook
from codingbot.webhook import router as webhook_router
from codingbot.worktree import WorktreeManager

logger = logging.getLogger(__name__)

ACTIVITY_RETENTION_HOURS = 72


class CodingBotServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        config: BotConfig | None = None,
        adapter: ExecutionAdapter | None = None,
    ):
        self.config_path = config_path
        self.config = config
        self.adapter = adapter
        self.started_at: float | None = None

        # Components (initialized in start())
        self.registry = SessionRegistry()
        self.event_queue: asyncio.Queue[TrackerEvent] | None = None
        self.journal: ActivityJournal | None = None
        self.tracker: TrackerClient | None = None
        self.orchestrator: Orchestrator | None = None
        self.router: EventRouter | None = None

    async def start(self) -> None:
        """Initialize all components and start the event loop consumer."""
        # 1. Config
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config
        logger.info("coding-bot server starting (repo=%s)", config.repo.main_checkout)

        # 2. Activity journal
        data_dir = Path(config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        self.journal = ActivityJournal(str(data_dir / "activity.db"))
        await self.journal.initialize()
        pruned = await self.journal.prune_old_activity(ACTIVITY_RETENTION_HOURS)
        if pruned:
            logger.info("Pruned %d journal entries older than %dh", pruned, ACTIVITY_RETENTION_HOURS)

        # 3. Tracker client
        self.tracker = TrackerClient(
            access_token=config.tracker.access_token,
            api_url=config.tracker.api_url,
        )
        await self.tracker.start()

        # 4. Orchestrator
        if self.adapter is None:
            self.adapter = ClaudeAgentAdapter.from_config(config.runtime)
        self.orchestrator = Orchestrator(
            config,
            self.registry,
            WorktreeManager(remote=config.repo.remote),
            self.adapter,
            tracker=self.tracker,
            journal=self.journal,
        )

        # 5. Event router
        self.event_queue = asyncio.Queue()
        self.router = EventRouter(
            self.event_queue,
            WebhookDeduplicator(window=config.runtime.dedup_window),
            self.orchestrator,
            organization_id=config.tracker.organization_id,
        )
        await self.router.start()

        # 6. Webhooks
        configure_webhook(self.event_queue)

        self.started_at = time.monotonic()
        logger.info("coding-bot server started successfully")

    async def stop(self) -> None:
        """Stop all components in reverse order."""
        logger.info("coding-bot server shutting down")

        if self.router:
            await self.router.stop()
        if self.orchestrator:
            await self.orchestrator.shutdown()
        if self.tracker:
            await self.tracker.close()
        if self.journal:
            await self.journal.close()

        logger.info("coding-bot server stopped")

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at if self.started_at is not None else 0.0


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = CodingBotServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(
    config_path: Path | None = None,
    *,
    config: BotConfig | None = None,
    adapter: ExecutionAdapter | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = CodingBotServer(config_path, config=config, adapter=adapter)

    app = FastAPI(
        title="coding-bot",
        version=__version__,
        description="Ticket-tracker agent that implements and answers tickets in isolated worktrees",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "coding-bot"}

    @app.get("/status")
    async def status():
        """Service status with configuration presence flags."""
        config = _server.config
        return {
            "service": "coding-bot",
            "version": __version__,
            "status": "running",
            "uptime": round(_server.uptime, 1),
            "config": {
                "has_tracker_token": bool(config and config.tracker.access_token),
                "has_anthropic_api_key": bool(os.environ.get("ANTHROPIC_API_KEY")),
                "repo_path": str(config.repo.main_checkout) if config else None,
                "base_branch": config.repo.base_branch if config else None,
                "model": config.runtime.model if config else None,
            },
            "sessions": len(_server.registry),
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
        }

    @app.get("/sessions")
    async def list_sessions():
        """Read-only listing of registered sessions."""
        sessions = _server.registry.list_sessions()
        return {
            "count": len(sessions),
            "sessions": [s.model_dump(mode="json") for s in sessions],
        }

    @app.get("/sessions/{session_id}/activity")
    async def session_activity(session_id: str, limit: int = 100):
        """Journaled activities for a session, newest first."""
        if _server.journal is None:
            raise HTTPException(status_code=503, detail="Activity journal not initialized")
        entries = await _server.journal.get_session_activity(session_id, limit=limit)
        return {
            "session_id": session_id,
            "activities": [e.model_dump(mode="json") for e in entries],
        }

    return app
