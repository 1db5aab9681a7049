"""Per-workspace fixed-window admission control.

Counters live in process memory only, so every instance enforces its own
ceiling: the effective global limit is ``limit × live instances``.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class RateLimitCounter:
    count: int
    reset_at: float  # clock value in ms


class RateLimiter:
    """Admit at most ``limit`` events per workspace per ``window_ms``.

    Bursts are allowed up to the ceiling; there is no refill between admits.
    ``clock`` returns milliseconds and can be swapped for a fake in tests.
    """

    def __init__(
        self,
        limit: int = 100,
        window_ms: int = 60_000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.limit = limit
        self.window_ms = window_ms
        self._clock = clock or monotonic_ms
        self._counters: dict[str, RateLimitCounter] = {}
        self._next_sweep = self._clock() + window_ms

    def admit(self, workspace_id: str) -> bool:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        counter = self._counters.get(workspace_id)

        if counter is None or now > counter.reset_at:
            self._counters[workspace_id] = RateLimitCounter(count=1, reset_at=now + self.window_ms)
            return True

        if counter.count >= self.limit:
            return False

        counter.count += 1
        return True

    def retry_after(self, workspace_id: str) -> float:
        """Seconds until the workspace's current window closes (0 if not limited)."""
        counter = self._counters.get(workspace_id)
        if counter is None or counter.count < self.limit:
            return 0.0
        return max(0.0, (counter.reset_at - self._clock()) / 1000)

    def _sweep(self, now: float):
        """Drop counters whose window has closed. Runs at most once per window."""
        expired = [ws for ws, c in self._counters.items() if now > c.reset_at]
        for ws in expired:
            del self._counters[ws]
        self._next_sweep = now + self.window_ms

    def reset(self, workspace_id: Optional[str] = None):
        if workspace_id is None:
            self._counters.clear()
        else:
            self._counters.pop(workspace_id, None)

    def __len__(self) -> int:
        return len(self._counters)
