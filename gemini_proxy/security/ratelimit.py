"""Rate limiting using in-memory fixed-window counters.

Enforces per-client request limits keyed by client IP. Each key owns one
window: the first request opens it with a count of 1, later requests
increment the count until ``max_requests`` is reached, and once the
window's reset time has passed the next request opens a fresh window.

The store is an explicit object owned by the application and injected into
request handlers. A ``RateLimitSweeper`` periodically purges expired windows
so the map does not grow without bound.

Returns standard rate limit metadata for response headers:
- X-RateLimit-Limit
- X-RateLimit-Remaining
- X-RateLimit-Reset
"""

import asyncio
import time
from dataclasses import dataclass

from gemini_proxy.logging.audit import get_audit_logger


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class RateLimitRecord:
    count: int
    reset_at: float  # epoch milliseconds


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch milliseconds

    @property
    def reset_seconds(self) -> float:
        """Seconds until the window resets, never negative."""
        return max(0.0, round((self.reset_at - _now_ms()) / 1000, 1))


class RateLimitStore:
    """Per-key fixed-window counters guarded by a single asyncio lock."""

    def __init__(self):
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """Count one request for ``key`` and decide whether it may proceed.

        Args:
            key: Client identifier (IP address).
            max_requests: Requests permitted per window.
            window_ms: Window length in milliseconds.
        """
        async with self._lock:
            now = _now_ms()
            record = self._records.get(key)

            if record is None or now > record.reset_at:
                record = RateLimitRecord(count=1, reset_at=now + window_ms)
                self._records[key] = record
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max(0, max_requests - 1),
                    reset_at=record.reset_at,
                )

            # Over the limit: deny without counting, so count never exceeds max
            if record.count >= max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=max_requests,
                    remaining=0,
                    reset_at=record.reset_at,
                )

            record.count += 1
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max(0, max_requests - record.count),
                reset_at=record.reset_at,
            )

    async def purge_expired(self) -> int:
        """Drop every record whose window has already ended. Returns how many."""
        async with self._lock:
            now = _now_ms()
            expired = [key for key, record in self._records.items() if now > record.reset_at]
            for key in expired:
                del self._records[key]
            return len(expired)

    async def reset(self, key: str) -> None:
        """Clear rate limit state for a client."""
        async with self._lock:
            self._records.pop(key, None)

    def get(self, key: str) -> RateLimitRecord | None:
        return self._records.get(key)

    def __len__(self) -> int:
        return len(self._records)


class RateLimitSweeper:
    """Background task that purges expired windows on a fixed interval."""

    def __init__(self, store: RateLimitStore, interval_seconds: float):
        self._store = store
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-limit-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            removed = await self._store.purge_expired()
            if removed:
                get_audit_logger().debug(
                    "Rate limit sweep",
                    extra={"audit_data": {"expired_records": removed, "active_records": len(self._store)}},
                )
