"""Rate limiting using in-memory sliding window counters.

Enforces per-token request limits. Timestamps of recent requests are stored
in a deque per key and expired entries are pruned on each check, plus a
periodic sweep that drops windows which have gone empty so memory stays
bounded by the number of recently active callers.

Returns standard rate limit metadata for response headers:
- X-RateLimit-Limit
- X-RateLimit-Remaining
- X-RateLimit-Reset
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass

from src.logging.audit import get_logger

logger = get_logger("tokens")

WINDOW_SECONDS = 60.0  # 1-minute sliding window


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: float


class SlidingWindowLimiter:
    """Per-key sliding windows behind one lock held only for the deque update."""

    def __init__(self, window_seconds: float = WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, window: deque[float], now: float) -> None:
        # An entry exactly one window old has left the window
        window_start = now - self.window_seconds
        while window and window[0] <= window_start:
            window.popleft()

    def hit(self, key: str, limit: int) -> RateLimitResult:
        """Count-and-record in one step: admit and append, or reject untouched.

        Args:
            key: Window key (the caller token value).
            limit: Max requests per window for this key.
        """
        now = time.monotonic()
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._prune(window, now)

            if len(window) >= limit:
                # Calculate when the oldest request in the window expires
                reset = window[0] + self.window_seconds - now if window else self.window_seconds
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_seconds=round(max(reset, 0.0), 1),
                )

            window.append(now)
            remaining = max(0, limit - len(window))
            reset = window[0] + self.window_seconds - now

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=remaining,
            reset_seconds=round(reset, 1),
        )

    def count(self, key: str) -> int:
        now = time.monotonic()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            self._prune(window, now)
            return len(window)

    def sweep(self) -> int:
        """Prune every window and drop the empty ones. Returns how many were dropped."""
        now = time.monotonic()
        with self._lock:
            for window in self._windows.values():
                self._prune(window, now)
            empty = [key for key, window in self._windows.items() if not window]
            for key in empty:
                del self._windows[key]
        return len(empty)

    def reset(self, key: str) -> None:
        """Clear rate limit state for a key."""
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


async def run_sweeper(limiter: SlidingWindowLimiter, interval: float) -> None:
    """Background task: sweep the limiter every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        dropped = limiter.sweep()
        if dropped:
            logger.debug("Rate limit windows swept", extra={"audit_data": {
                "dropped": dropped, "remaining": len(limiter),
            }})
