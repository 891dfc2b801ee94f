"""In-memory sliding-window rate limiter keyed by operation class and identity."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock

from src.api.middleware.error_handler import RateLimitError

logger = logging.getLogger(__name__)


class OperationClass(str, Enum):
    """Operation classes with independent request ceilings."""

    CART = "cart"
    CHECKOUT = "checkout"
    CATALOG = "catalog"
    AUTH = "auth"
    WEBHOOK = "webhook"


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    limits: dict[OperationClass, int] = field(
        default_factory=lambda: {
            OperationClass.CART: 100,
            OperationClass.CHECKOUT: 10,
            OperationClass.CATALOG: 300,
            OperationClass.AUTH: 5,
            OperationClass.WEBHOOK: 50,
        }
    )
    window_seconds: int = 60
    cleanup_interval_seconds: int = 300

    @classmethod
    def from_settings(cls) -> "RateLimitConfig":
        """Create config from application settings."""
        from src.core.config import get_settings

        settings = get_settings()
        return cls(
            limits={
                OperationClass.CART: settings.rate_limit_cart_requests,
                OperationClass.CHECKOUT: settings.rate_limit_checkout_requests,
                OperationClass.CATALOG: settings.rate_limit_catalog_requests,
                OperationClass.AUTH: settings.rate_limit_auth_requests,
                OperationClass.WEBHOOK: settings.rate_limit_webhook_requests,
            },
            window_seconds=settings.rate_limit_window_seconds,
            cleanup_interval_seconds=settings.rate_limit_cleanup_interval_seconds,
        )

    def limit_for(self, operation: OperationClass) -> int:
        """Return the request ceiling for an operation class."""
        return self.limits[operation]


@dataclass
class RequestRecord:
    """Recent request timestamps for one (operation class, identity) key."""

    timestamps: list[float] = field(default_factory=list)
    expires_at: float = 0.0

    def prune_old(self, window_seconds: int, now: float) -> None:
        """Remove timestamps older than the window."""
        cutoff = now - window_seconds
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]

    def add_request(self, now: float, window_seconds: int) -> None:
        """Record a new request."""
        self.timestamps.append(now)
        self.expires_at = now + window_seconds

    def retry_after_ms(self, window_seconds: int, now: float) -> int:
        """Milliseconds until the oldest request in the window ages out."""
        if not self.timestamps:
            return 0
        oldest = min(self.timestamps)
        return max(0, int((oldest + window_seconds - now) * 1000))


def rate_limit_key(operation: OperationClass, identity: str | None) -> str:
    """Build the storage key for an operation class and caller identity."""
    return f"rateLimit:{operation.value}:{identity or 'anonymous'}"


class InMemoryRateLimitStorage:
    """Thread-safe in-memory rate limit storage with automatic cleanup."""

    def __init__(self, config: RateLimitConfig | None = None, clock=time.time) -> None:
        self.config = config or RateLimitConfig()
        self._storage: dict[str, RequestRecord] = defaultdict(RequestRecord)
        self._lock = Lock()
        self._clock = clock
        self._cleanup_task: asyncio.Task | None = None

    async def start_cleanup_task(self) -> None:
        """Start background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Rate limiter cleanup task started")

    async def stop_cleanup_task(self) -> None:
        """Stop background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Rate limiter cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        """Background loop to cleanup expired entries."""
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            count = await self.cleanup()
            if count > 0:
                logger.debug("Rate limiter cleaned up %d expired entries", count)

    async def check_and_increment(
        self,
        key: str,
        max_requests: int,
        window_seconds: int | None = None,
    ) -> tuple[bool, int, int]:
        """Check rate limit and record the request if allowed.

        Args:
            key: Storage key (see rate_limit_key).
            max_requests: Ceiling for the window.
            window_seconds: Override window (uses config default).

        Returns:
            Tuple of (allowed, remaining_requests, retry_after_ms).
        """
        window = window_seconds or self.config.window_seconds
        now = self._clock()

        with self._lock:
            record = self._storage[key]
            record.prune_old(window, now)
            current_count = len(record.timestamps)

            if current_count >= max_requests:
                return (False, 0, record.retry_after_ms(window, now))

            record.add_request(now, window)
            return (True, max_requests - current_count - 1, 0)

    async def enforce(self, operation: OperationClass, identity: str | None) -> int:
        """Admit one request for ``identity`` or raise RateLimitError.

        Args:
            operation: Operation class being performed.
            identity: Owner key, user id or client address.

        Returns:
            int: Requests remaining in the current window.

        Raises:
            RateLimitError: If the ceiling for the class is reached.
        """
        limit = self.config.limit_for(operation)
        allowed, remaining, retry_after_ms = await self.check_and_increment(
            rate_limit_key(operation, identity),
            max_requests=limit,
        )
        if not allowed:
            logger.warning(
                "%s limit exceeded for %s (limit=%d, retry_after_ms=%d)",
                operation.value,
                identity or "anonymous",
                limit,
                retry_after_ms,
            )
            raise RateLimitError(
                message=f"Rate limit exceeded for {operation.value}. Try again in {retry_after_ms}ms",
                retry_after_ms=retry_after_ms,
                limit=limit,
            )
        return remaining

    async def reset(self, operation: OperationClass, identity: str | None) -> None:
        """Forget recorded requests for one key."""
        with self._lock:
            self._storage.pop(rate_limit_key(operation, identity), None)

    async def cleanup(self) -> int:
        """Remove records whose expiry has passed."""
        now = self._clock()
        removed = 0

        with self._lock:
            expired = [key for key, record in self._storage.items() if record.expires_at <= now]
            for key in expired:
                del self._storage[key]
                removed += 1

        return removed

    def get_stats(self) -> dict:
        """Get storage statistics for monitoring."""
        with self._lock:
            return {
                "active_keys": len(self._storage),
                "config": {
                    "limits": {op.value: limit for op, limit in self.config.limits.items()},
                    "window_seconds": self.config.window_seconds,
                },
            }


# Global singleton instance
_rate_limiter: InMemoryRateLimitStorage | None = None


def get_rate_limiter() -> InMemoryRateLimitStorage:
    """Get or create the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = InMemoryRateLimitStorage(RateLimitConfig.from_settings())
    return _rate_limiter


async def init_rate_limiter() -> InMemoryRateLimitStorage:
    """Initialize rate limiter with cleanup task. Call at app startup."""
    limiter = get_rate_limiter()
    await limiter.start_cleanup_task()
    return limiter


async def shutdown_rate_limiter() -> None:
    """Shutdown rate limiter cleanup task. Call at app shutdown."""
    global _rate_limiter
    if _rate_limiter:
        await _rate_limiter.stop_cleanup_task()
