from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

from movie_chat.core.metrics import metrics

logger = logging.getLogger(__name__)

_SWEEP_EVERY = 1000


class RateLimiter:
    """Per-session sliding window gate.

    Keeps only timestamps newer than ``now - window``. State is process
    local; several service instances each enforce their own window.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_ms: int = 30000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, max_requests)
        self.window_sec = max(1, window_ms) / 1000.0
        self._clock = clock
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._calls_since_sweep = 0

    def _prune(self, session_id: str, now: float) -> Deque[float]:
        events = self._events[session_id]
        window_start = now - self.window_sec
        while events and events[0] <= window_start:
            events.popleft()
        return events

    def sweep(self) -> int:
        """Drop sessions whose whole window has expired. Returns how many were dropped."""
        window_start = self._clock() - self.window_sec
        stale = [key for key, events in self._events.items() if not events or events[-1] <= window_start]
        for key in stale:
            self._events.pop(key, None)
        return len(stale)

    def is_rate_limited(self, session_id: str) -> bool:
        now = self._clock()
        self._calls_since_sweep += 1
        if self._calls_since_sweep >= _SWEEP_EVERY:
            self._calls_since_sweep = 0
            self.sweep()
        events = self._prune(session_id, now)
        if len(events) >= self.max_requests:
            logger.warning("rate limit exceeded for session %s", session_id)
            metrics.inc("chat_rate_limited_total")
            return True
        events.append(now)
        return False

    def remaining(self, session_id: str) -> int:
        if session_id not in self._events:
            return self.max_requests
        events = self._prune(session_id, self._clock())
        if not events:
            self._events.pop(session_id, None)
        return max(0, self.max_requests - len(events))

    def clear_session(self, session_id: str) -> None:
        self._events.pop(session_id, None)
