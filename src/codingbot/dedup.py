"""Webhook deduplication: suppresses repeated processing of the same event.

The tracker delivers at-least-once and retries on slow responses. Every
event key is remembered for a retention window; keys older than the window
are pruned lazily on insert, so memory is bounded by event rate, not by a
hard cap.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 300.0  # seconds


class WebhookDeduplicator:
    """Time-windowed set of seen event keys."""

    def __init__(
        self,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self._clock = clock
        self._seen: dict[str, float] = {}

    def seen(self, key: str) -> bool:
        """Return True if ``key`` was recorded within the retention window."""
        recorded_at = self._seen.get(key)
        if recorded_at is None:
            return False
        return self._clock() - recorded_at <= self.window

    def record(self, key: str) -> None:
        """Remember ``key`` as processed now, pruning expired entries."""
        now = self._clock()
        self._prune(now)
        self._seen[key] = now

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if expired:
            logger.debug("Pruned %d expired dedup entries", len(expired))

    def __len__(self) -> int:
        return len(self._seen)
