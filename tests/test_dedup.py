"""Tests for the webhook deduplicator."""

from codingbot.dedup import WebhookDeduplicator


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestWebhookDeduplicator:
    def test_unseen_key(self):
        dedup = WebhookDeduplicator()
        assert dedup.seen("delivery-1") is False

    def test_recorded_key_is_seen(self):
        dedup = WebhookDeduplicator()
        dedup.record("delivery-1")
        assert dedup.seen("delivery-1") is True
        assert dedup.seen("delivery-2") is False

    def test_key_expires_after_window(self):
        clock = FakeClock()
        dedup = WebhookDeduplicator(window=300, clock=clock)
        dedup.record("delivery-1")

        clock.now += 299
        assert dedup.seen("delivery-1") is True

        clock.now += 2
        assert dedup.seen("delivery-1") is False

    def test_expired_entries_pruned_on_insert(self):
        clock = FakeClock()
        dedup = WebhookDeduplicator(window=60, clock=clock)
        dedup.record("a")
        dedup.record("b")
        assert len(dedup) == 2

        clock.now += 120
        dedup.record("c")
        assert len(dedup) == 1
        assert dedup.seen("c") is True

    def test_rerecording_refreshes_timestamp(self):
        clock = FakeClock()
        dedup = WebhookDeduplicator(window=60, clock=clock)
        dedup.record("a")
        clock.now += 50
        dedup.record("a")
        clock.now += 50
        assert dedup.seen("a") is True
