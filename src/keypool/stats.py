"""
Request statistics for the admin surface.
Counts chat-completion requests and their error rate over a sliding window.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

STATS_WINDOW_SECONDS = 24 * 60 * 60


@dataclass
class RequestEvent:
    """One finished request."""

    timestamp: float
    status_code: int

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass
class RequestStats:
    """
    Process-local request counters.

    Events older than ``window_seconds`` are pruned on every read and write,
    so memory stays bounded by the request rate of one window.
    """

    window_seconds: int = STATS_WINDOW_SECONDS
    _events: deque[RequestEvent] = field(default_factory=deque)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._events and self._events[0].timestamp <= cutoff:
            self._events.popleft()

    def record(self, status_code: int, now: float | None = None) -> None:
        """Record a finished request with its response status."""
        now = time.time() if now is None else now
        self._prune(now)
        self._events.append(RequestEvent(timestamp=now, status_code=status_code))

    def total_requests(self, now: float | None = None) -> int:
        """Requests seen within the window."""
        self._prune(time.time() if now is None else now)
        return len(self._events)

    def error_rate(self, now: float | None = None) -> int:
        """Percentage of requests in the window answered with 4xx/5xx, rounded."""
        total = self.total_requests(now)
        if total == 0:
            return 0
        errors = sum(1 for event in self._events if event.is_error)
        return round(errors / total * 100)

    def to_dict(self, now: float | None = None) -> dict[str, int]:
        return {
            "total_requests": self.total_requests(now),
            "error_rate": self.error_rate(now),
        }
