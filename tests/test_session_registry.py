"""Tests for the session registry and Session entity."""

import asyncio

import pytest

from codingbot.models import InteractionKind, PendingQuestion, SessionState
from codingbot.session_registry import Session, SessionRegistry


def _session(session_id: str = "sess-1", **kwargs) -> Session:
    return Session(
        session_id=session_id,
        ticket_id=kwargs.pop("ticket_id", "ENG-1"),
        interaction_kind=kwargs.pop("interaction_kind", InteractionKind.ASSIGNMENT),
        **kwargs,
    )


@pytest.fixture
def registry():
    return SessionRegistry()


class TestRegistration:
    def test_register_and_get(self, registry):
        session = _session()
        assert registry.register(session) is True
        assert registry.has("sess-1")
        assert registry.get("sess-1") is session
        assert len(registry) == 1

    def test_duplicate_registration_keeps_first(self, registry):
        first = _session()
        second = _session()
        assert registry.register(first) is True
        assert registry.register(second) is False
        assert registry.get("sess-1") is first
        assert len(registry) == 1

    def test_unregister(self, registry):
        registry.register(_session())
        assert registry.unregister("sess-1") is True
        assert not registry.has("sess-1")
        assert registry.unregister("sess-1") is False

    def test_update_worktree(self, registry):
        registry.register(_session())
        assert registry.update_worktree("sess-1", "/tmp/wt") is True
        assert registry.get("sess-1").worktree_path == "/tmp/wt"

    def test_update_worktree_unknown_session(self, registry):
        assert registry.update_worktree("missing", "/tmp/wt") is False


class TestAbort:
    def test_abort_unknown_session(self, registry):
        assert registry.abort("missing") is False

    def test_abort_sets_cancellation(self, registry):
        session = _session()
        registry.register(session)
        assert registry.abort("sess-1") is True
        assert session.is_cancelled
        assert session.stop_reason == "stop"

    def test_cancellation_is_monotonic(self, registry):
        session = _session()
        registry.register(session)
        registry.abort("sess-1", "timeout")
        registry.abort("sess-1", "stop")
        assert session.is_cancelled
        assert session.stop_reason == "timeout"

    def test_terminal_session_not_cancelled(self):
        session = _session()
        session.state = SessionState.COMPLETE
        assert session.cancel() is False
        assert not session.is_cancelled

    async def test_abort_cancels_running_task(self, registry):
        session = _session()
        registry.register(session)
        session.task = asyncio.create_task(asyncio.sleep(60))
        await asyncio.sleep(0)

        registry.abort("sess-1")
        with pytest.raises(asyncio.CancelledError):
            await session.task


class TestTimeout:
    async def test_timeout_fires(self):
        session = _session()
        fired = asyncio.Event()

        async def on_expire():
            fired.set()

        session.arm_timeout(0.01, on_expire)
        await asyncio.wait_for(fired.wait(), timeout=1)

    async def test_clear_timeout_prevents_firing(self):
        session = _session()
        fired = []

        async def on_expire():
            fired.append(True)

        session.arm_timeout(0.05, on_expire)
        session.clear_timeout()
        await asyncio.sleep(0.1)
        assert fired == []
        assert session.timeout_handle is None

    async def test_rearm_replaces_timer(self):
        session = _session()
        fired = []

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        session.arm_timeout(0.05, first)
        session.arm_timeout(0.01, second)
        await asyncio.sleep(0.1)
        assert fired == ["second"]


class TestListing:
    def test_list_sessions_snapshot(self, registry):
        a = _session("a", ticket_id="ENG-1")
        b = _session("b", ticket_id="ENG-2", interaction_kind=InteractionKind.QUESTION)
        b.pending_question = PendingQuestion(question_id="q1", body="Which DB?")
        registry.register(a)
        registry.register(b)
        registry.update_worktree("a", "/wt/a")

        infos = {info.session_id: info for info in registry.list_sessions()}
        assert infos["a"].worktree_path == "/wt/a"
        assert infos["a"].interaction_kind is InteractionKind.ASSIGNMENT
        assert infos["a"].awaiting_input is False
        assert infos["b"].ticket_id == "ENG-2"
        assert infos["b"].awaiting_input is True
        assert infos["b"].state is SessionState.NEW
