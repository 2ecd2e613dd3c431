from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Protocol, Tuple

from warden.logging import get_logger
from warden.service.clock import Clock, SystemClock
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter(Protocol):
    async def allow(self, key: str, limit: int, window_seconds: float) -> bool: ...

    async def prune(self) -> int: ...


def _normalize_window(key: str, window_seconds: float) -> float:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window; defaulting to 60 seconds",
        )
        return 60.0
    return float(window_seconds)


class MemoryRateLimiter:
    """Sliding-window limiter for a single process.

    Each key keeps the timestamps of its admitted attempts. The prune, count
    and append for one call happen under one lock, so concurrent callers on
    the same key are admitted strictly one at a time. Rejections leave no
    trace.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._windows: Dict[str, Tuple[float, Deque[datetime]]] = {}
        self._lock = threading.Lock()

    async def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        return self.allow_sync(key, limit, window_seconds)

    def allow_sync(self, key: str, limit: int, window_seconds: float) -> bool:
        if limit <= 0:
            return False
        window_seconds = _normalize_window(key, window_seconds)
        now = self.clock.now()
        cutoff = now - timedelta(seconds=window_seconds)
        with self._lock:
            _, attempts = self._windows.get(key, (window_seconds, deque()))
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if len(attempts) >= limit:
                self._windows[key] = (window_seconds, attempts)
                return False
            attempts.append(now)
            self._windows[key] = (window_seconds, attempts)
            return True

    async def prune(self) -> int:
        """Drop keys whose every recorded attempt has left its window."""
        now = self.clock.now()
        removed = 0
        with self._lock:
            for key in list(self._windows):
                window_seconds, attempts = self._windows[key]
                cutoff = now - timedelta(seconds=window_seconds)
                while attempts and attempts[0] <= cutoff:
                    attempts.popleft()
                if not attempts:
                    del self._windows[key]
                    removed += 1
        return removed

    def attempts(self, key: str) -> int:
        with self._lock:
            entry = self._windows.get(key)
            return len(entry[1]) if entry else 0


class RedisRateLimiter:
    """Sliding-window limiter shared across processes through Redis."""

    def __init__(self, cache: RedisCache, clock: Clock | None = None) -> None:
        self.cache = cache
        self.clock = clock or SystemClock()

    async def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        if limit <= 0:
            return False
        window_seconds = _normalize_window(key, window_seconds)
        allowed, count = await self.cache.record_attempt(
            key, limit, window_seconds, self.clock.now()
        )
        if not allowed:
            logger.info("rate_limit_rejected", count=count, limit=limit)
        return allowed

    async def prune(self) -> int:
        # Redis expires idle windows itself
        return 0
