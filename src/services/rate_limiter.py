"""Per-caller fixed-window request limiting.

Two implementations share the ``RateLimiter`` interface:

* ``InMemoryRateLimiter``: the default for a single instance.  The whole
  check-and-increment runs under one lock, so two requests for the same
  key arriving together cannot both slip past the cap.
* ``RedisRateLimiter``: for horizontally scaled deployments.  A Lua script
  does INCR + PEXPIRE in one round trip, which Redis executes atomically.

Semantics (both): the first request of a window (or the first after the
window elapsed) starts a new window with count 1 and is admitted.  Every
later request increments the count and is admitted iff ``count <= cap``.
Rejected requests do not extend the window.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from src.config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS, REDIS_URL
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# Prune expired entries once the map grows past this many keys
_PRUNE_THRESHOLD = 10_000

_REDIS_KEY_PREFIX = "chat:ratelimit:"

# KEYS[1] = counter key, ARGV[1] = window in ms.  Returns the new count.
_FIXED_WINDOW_SCRIPT = """
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return count
"""


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: float


class RateLimiter(ABC):
    """Admission decision for one request keyed by caller."""

    @abstractmethod
    def allow(self, key: str) -> bool:
        """Return ``True`` if the request may proceed.  Never raises."""


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counter kept in process memory."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, max_requests)
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_reset_at:
                if len(self._entries) >= _PRUNE_THRESHOLD:
                    self._prune(now)
                self._entries[key] = RateLimitEntry(
                    count=1, window_reset_at=now + self.window_seconds,
                )
                return True
            entry.count += 1
            allowed = entry.count <= self.max_requests

        if not allowed:
            logger.info("Rate limit exceeded for key %s", key)
            metrics.record_event("Chat/RateLimited", Backend="memory")
        return allowed

    def _prune(self, now: float) -> None:
        stale = [k for k, e in self._entries.items() if now >= e.window_reset_at]
        for key in stale:
            del self._entries[key]
        logger.debug("Rate limiter: pruned %d expired windows", len(stale))

    def entry(self, key: str) -> RateLimitEntry | None:
        """Current window for *key* (for diagnostics and tests)."""
        with self._lock:
            return self._entries.get(key)


class RedisRateLimiter(RateLimiter):
    """Fixed-window counter shared across instances through Redis.

    Redis outages fail open: a limiter that cannot reach its store admits
    the request and logs, rather than taking the chat endpoint down.
    """

    def __init__(
        self,
        redis_url: str,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        *,
        client=None,
    ) -> None:
        if client is None:
            import redis  # noqa: PLC0415 (multi-instance deployments only)

            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self.max_requests = max(1, max_requests)
        self.window_ms = max(1, int(window_seconds * 1000))
        self._redis = client
        self._script = client.register_script(_FIXED_WINDOW_SCRIPT)

    def allow(self, key: str) -> bool:
        try:
            count = int(self._script(keys=[f"{_REDIS_KEY_PREFIX}{key}"], args=[self.window_ms]))
        except Exception as exc:
            logger.warning("Redis rate limiter unavailable, admitting request: %s", exc)
            metrics.record_failure("redis", "rate_limit", error_type=type(exc).__name__)
            return True

        if count > self.max_requests:
            logger.info("Rate limit exceeded for key %s (count=%d)", key, count)
            metrics.record_event("Chat/RateLimited", Backend="redis")
            return False
        return True


def build_rate_limiter() -> RateLimiter:
    """Pick the shared Redis limiter when ``REDIS_URL`` is set."""
    if REDIS_URL:
        logger.info("Using Redis rate limiter")
        return RedisRateLimiter(REDIS_URL)
    return InMemoryRateLimiter()
