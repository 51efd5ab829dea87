"""Tests for the local activity journal."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from codingbot.activity import ActivityJournal
from codingbot.models import ActivityContent, ActivityKind


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def journal(tmp_path):
    journal = ActivityJournal(str(tmp_path / "activity.db"))
    await journal.initialize()
    yield journal
    await journal.close()


# ── Journal ──────────────────────────────────────────────────────────────────


class TestActivityJournal:
    async def test_record_and_read_back(self, journal):
        entry = await journal.record("sess-1", ActivityContent.thought("Planning"), delivered=True)
        assert entry.id is not None

        [stored] = await journal.get_session_activity("sess-1")
        assert stored.session_id == "sess-1"
        assert stored.kind is ActivityKind.THOUGHT
        assert stored.body == "Planning"
        assert stored.delivered is True

    async def test_action_fields_persisted(self, journal):
        await journal.record(
            "sess-1", ActivityContent.tool_action("Edit", '{"path": "a.py"}'), delivered=False
        )
        [stored] = await journal.get_session_activity("sess-1")
        assert stored.kind is ActivityKind.ACTION
        assert stored.action == "Edit"
        assert stored.parameter == '{"path": "a.py"}'
        assert stored.delivered is False

    async def test_most_recent_first_and_scoped(self, journal):
        await journal.record("sess-1", ActivityContent.thought("first"), delivered=True)
        await journal.record("sess-2", ActivityContent.thought("other"), delivered=True)
        await journal.record("sess-1", ActivityContent.response("second"), delivered=True)

        entries = await journal.get_session_activity("sess-1")
        assert [e.body for e in entries] == ["second", "first"]

    async def test_limit(self, journal):
        for i in range(5):
            await journal.record("sess-1", ActivityContent.thought(str(i)), delivered=True)
        assert len(await journal.get_session_activity("sess-1", limit=2)) == 2

    async def test_prune_old_activity(self, journal):
        await journal.record("sess-1", ActivityContent.thought("fresh"), delivered=True)
        old = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        await journal.db.execute(
            "INSERT INTO session_activity (session_id, kind, timestamp, body, delivered) "
            "VALUES (?, ?, ?, ?, ?)",
            ("sess-1", "thought", old, "stale", 1),
        )
        await journal.db.commit()

        removed = await journal.prune_old_activity(hours=72)

        assert removed == 1
        assert [e.body for e in await journal.get_session_activity("sess-1")] == ["fresh"]


def test_uninitialized_journal_raises(tmp_path):
    journal = ActivityJournal(str(tmp_path / "x.db"))
    with pytest.raises(RuntimeError, match="not initialized"):
        _ = journal.db
