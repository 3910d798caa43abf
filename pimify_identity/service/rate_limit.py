from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple

from pimify_identity.logging import get_logger
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result

logger = get_logger(__name__)

LOGIN_ROUTE = "auth:login"
PASSWORD_RESET_ROUTE = "auth:password-reset"
INVITATION_ROUTE = "invitations:create"
DEFAULT_ROUTE = "default"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int

    def as_dict(self) -> dict:
        return {"max_requests": self.max_requests, "window_ms": self.window_ms}


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    window_ms: int
    remaining: int
    retry_after_ms: int = 0


class RateLimitBackend(Protocol):
    async def hit(self, key: str, max_requests: int, window_ms: int) -> Tuple[bool, int, int]: ...

    async def reset(self, key: str) -> None: ...

    def evict_idle(self) -> int: ...


class SlidingWindowLog:
    """Per-key log of request timestamps (ms) inside the trailing window."""

    def __init__(
        self,
        *,
        idle_eviction_ms: int = 300_000,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000,
    ) -> None:
        self._buckets: Dict[str, Deque[float]] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.idle_eviction_ms = idle_eviction_ms

    async def hit(self, key: str, max_requests: int, window_ms: int) -> Tuple[bool, int, int]:
        with self._lock:
            now = self._clock()
            bucket = self._buckets.setdefault(key, deque())
            self._last_seen[key] = now
            cutoff = now - window_ms
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= max_requests:
                retry_after = int(bucket[0] + window_ms - now)
                return False, len(bucket), max(1, retry_after)
            bucket.append(now)
            return True, len(bucket), 0

    async def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)
            self._last_seen.pop(key, None)

    def evict_idle(self) -> int:
        """Drop buckets with no activity in ``idle_eviction_ms``."""
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, seen in self._last_seen.items()
                if now - seen >= self.idle_eviction_ms
            ]
            for key in stale:
                self._buckets.pop(key, None)
                self._last_seen.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class RateLimiter:
    """Sliding-window throttle keyed by (caller identity, route)."""

    def __init__(
        self,
        *,
        default: RateLimitConfig,
        routes: Optional[Dict[str, RateLimitConfig]] = None,
        backend: Optional[RateLimitBackend] = None,
        enabled: bool = True,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default = default
        self.routes: Dict[str, RateLimitConfig] = dict(routes or {})
        self.backend: RateLimitBackend = backend or SlidingWindowLog()
        self.enabled = enabled
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()
        self._sweepers: List[Callable[[], int]] = []

    def add_sweeper(self, sweeper: Callable[[], int]) -> None:
        """Run ``sweeper`` alongside idle-bucket eviction; it returns how
        many entries it dropped."""
        self._sweepers.append(sweeper)

    @classmethod
    def from_settings(cls, settings, backend: Optional[RateLimitBackend] = None) -> "RateLimiter":
        window = settings.rate_limit_window_ms
        return cls(
            default=RateLimitConfig(settings.rate_limit_max_requests, window),
            routes={
                LOGIN_ROUTE: RateLimitConfig(settings.login_rate_limit, window),
                PASSWORD_RESET_ROUTE: RateLimitConfig(settings.password_reset_rate_limit, window),
                INVITATION_ROUTE: RateLimitConfig(settings.invitation_rate_limit, window),
            },
            backend=backend
            or SlidingWindowLog(idle_eviction_ms=settings.rate_limit_idle_eviction_seconds * 1000),
            enabled=settings.rate_limit_enabled,
        )

    def config_for(self, route: str) -> RateLimitConfig:
        return self.routes.get(route, self.default)

    @staticmethod
    def bucket_key(identity: str, route: str) -> str:
        return f"{identity}:{route}"

    async def status(self, identity: str, route: str = DEFAULT_ROUTE) -> RateLimitStatus:
        config = self.config_for(route)
        if not self.enabled or config.max_requests <= 0:
            return RateLimitStatus(True, config.max_requests, config.window_ms, config.max_requests)
        self._maybe_sweep()
        allowed, count, retry_after = await self.backend.hit(
            self.bucket_key(identity, route), config.max_requests, config.window_ms
        )
        return RateLimitStatus(
            allowed=allowed,
            limit=config.max_requests,
            window_ms=config.window_ms,
            remaining=max(0, config.max_requests - count),
            retry_after_ms=retry_after,
        )

    async def check(self, identity: str, route: str = DEFAULT_ROUTE) -> Result:
        """Count one request; fails RATE_LIMIT_EXCEEDED with ``retry_after_ms``."""
        status = await self.status(identity, route)
        if status.allowed:
            return Result.ok({"remaining": status.remaining}, limit=status.limit, window_ms=status.window_ms)
        logger.warning(
            "rate_limit_exceeded",
            route=route,
            limit=status.limit,
            window_ms=status.window_ms,
            retry_after_ms=status.retry_after_ms,
        )
        return Result.fail(
            ErrorKind.RATE_LIMIT_EXCEEDED,
            "too many requests",
            retry_after_ms=status.retry_after_ms,
            limit=status.limit,
            window_ms=status.window_ms,
        )

    async def reset(self, identity: str, route: str = DEFAULT_ROUTE) -> None:
        await self.backend.reset(self.bucket_key(identity, route))

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        evicted = self.backend.evict_idle()
        if evicted:
            logger.debug("rate_limit_buckets_evicted", count=evicted)
        for sweeper in self._sweepers:
            purged = sweeper()
            if purged:
                logger.debug("expired_entries_purged", count=purged)


__all__ = [
    "DEFAULT_ROUTE",
    "INVITATION_ROUTE",
    "LOGIN_ROUTE",
    "PASSWORD_RESET_ROUTE",
    "RateLimitBackend",
    "RateLimitConfig",
    "RateLimitStatus",
    "RateLimiter",
    "SlidingWindowLog",
]
