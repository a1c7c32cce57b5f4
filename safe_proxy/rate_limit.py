import math
import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """Per-client request counter over a sliding time window."""

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
        max_tracked_clients: int = 10_000,
    ):
        self.window_seconds = window_seconds
        self.max_tracked_clients = max_tracked_clients
        self.max_requests = max_requests
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0 and self.window_seconds > 0

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._requests.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        return hits

    def check(self, key: str) -> bool:
        """Record a request for ``key``; False when it exceeds the limit."""
        if not self.enabled:
            return True
        if len(self._requests) > self.max_tracked_clients:
            self.sweep()
        now = self._clock()
        hits = self._prune(key, now)
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def retry_after(self, key: str) -> int:
        """Whole seconds until ``key`` may send another request."""
        hits = self._requests.get(key)
        if not hits:
            return 0
        return max(1, math.ceil(self.window_seconds - (self._clock() - hits[0])))

    def sweep(self) -> None:
        """Forget clients that have no requests left in the window."""
        now = self._clock()
        for key in list(self._requests):
            if not self._prune(key, now):
                del self._requests[key]
