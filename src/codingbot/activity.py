"""Activity journal: a local record of everything mirrored to the tracker.

Every activity the orchestrator tries to post is written here together
with whether the tracker accepted it, so operators can reconstruct a
session even when the tracker call failed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import aiosqlite
from pydantic import BaseModel, Field

from codingbot.models import ActivityContent, ActivityKind

logger = logging.getLogger(__name__)


class ActivityRecord(BaseModel):
    """One journaled activity."""

    id: int | None = None
    session_id: str
    kind: ActivityKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    body: str | None = None
    action: str | None = None
    parameter: str | None = None
    delivered: bool = False


JOURNAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    body TEXT,
    action TEXT,
    parameter TEXT,
    delivered INTEGER NOT NULL DEFAULT 0  -- 0/1 boolean
);

CREATE INDEX IF NOT EXISTS idx_activity_session_time ON session_activity(session_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON session_activity(timestamp DESC);
"""


class ActivityJournal:
    """SQLite-backed activity journal."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(JOURNAL_SCHEMA)
        await self._db.commit()
        logger.info("Activity journal initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("ActivityJournal not initialized")
        return self._db

    async def record(
        self, session_id: str, content: ActivityContent, delivered: bool
    ) -> ActivityRecord:
        entry = ActivityRecord(
            session_id=session_id,
            kind=content.kind,
            body=content.body,
            action=content.action,
            parameter=content.parameter,
            delivered=delivered,
        )
        cursor = await self.db.execute(
            """INSERT INTO session_activity
               (session_id, kind, timestamp, body, action, parameter, delivered)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.session_id,
                entry.kind.value,
                entry.timestamp.isoformat(),
                entry.body,
                entry.action,
                entry.parameter,
                1 if entry.delivered else 0,
            ),
        )
        await self.db.commit()
        entry.id = cursor.lastrowid
        return entry

    async def get_session_activity(self, session_id: str, limit: int = 100) -> list[ActivityRecord]:
        """Most recent entries first."""
        async with self.db.execute(
            """SELECT * FROM session_activity WHERE session_id = ?
               ORDER BY timestamp DESC, id DESC LIMIT ?""",
            (session_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_record(row) for row in rows]

    async def prune_old_activity(self, hours: int = 72) -> int:
        """Delete entries older than ``hours``. Returns the number removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        cursor = await self.db.execute(
            "DELETE FROM session_activity WHERE timestamp < ?",
            (cutoff.isoformat(),),
        )
        await self.db.commit()
        return cursor.rowcount

    def _row_to_record(self, row: aiosqlite.Row) -> ActivityRecord:
        return ActivityRecord(
            id=row["id"],
            session_id=row["session_id"],
            kind=ActivityKind(row["kind"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            body=row["body"],
            action=row["action"],
            parameter=row["parameter"],
            delivered=bool(row["delivered"]),
        )
