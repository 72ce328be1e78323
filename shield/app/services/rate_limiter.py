"""Sliding-window rate limiter backed by the shared counter store.

Each check records the current request in a sorted set keyed by
identifier and endpoint, drops entries older than the window and counts
what remains. Because the boundary moves with the clock, there is no
fixed bucket reset that a client could time a burst against.
"""

import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from shield.app.core.logging import get_logger
from shield.app.core.store import Clock, CounterStore, current_time_ms, escape_pattern
from shield.app.exceptions import ConfigurationError, StoreUnavailableError

logger = get_logger(__name__)

_API_PREFIX = re.compile(r"^/api/")
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9:_-]")


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window policy.

    Attributes:
        window_ms: Length of the trailing window in milliseconds
        max_requests: Requests allowed per window; 0 denies everything
        key_prefix: Namespace for this policy's store keys
    """
    window_ms: int
    max_requests: int
    key_prefix: str = "ratelimit"

    def __post_init__(self) -> None:
        if isinstance(self.window_ms, bool) or not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise ConfigurationError(f"window_ms must be a positive integer, got {self.window_ms!r}")
        if isinstance(self.max_requests, bool) or not isinstance(self.max_requests, int) or self.max_requests < 0:
            raise ConfigurationError(f"max_requests must be a non-negative integer, got {self.max_requests!r}")
        if not self.key_prefix:
            raise ConfigurationError("key_prefix must not be empty")


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None


ANONYMOUS_CONFIG = RateLimitConfig(
    window_ms=60 * 1000,
    max_requests=100,
    key_prefix="ratelimit:anon",
)

AUTHENTICATED_CONFIG = RateLimitConfig(
    window_ms=60 * 60 * 1000,
    max_requests=500,
    key_prefix="ratelimit:auth",
)


def sanitize_endpoint(endpoint: str) -> str:
    """Turn a request path into a store-safe key segment.

    ``/api/projects/42`` becomes ``projects:42``.
    """
    endpoint = _API_PREFIX.sub("", endpoint)
    endpoint = endpoint.replace("/", ":")
    return _UNSAFE_KEY_CHARS.sub("_", endpoint)


def _to_datetime(timestamp_ms: float) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


class RateLimiter:
    """Per-identifier, per-endpoint sliding window limiter.

    The limiter holds no state of its own; every decision is made from the
    shared store so any number of workers can enforce one limit.

    A request is recorded before the verdict is computed, so denied
    requests also occupy the window. Clients that keep hammering a limited
    endpoint therefore stay limited instead of probing for free.

    Store failures fail open: the request is allowed with a full quota and
    a warning is logged. Callers that need fail-closed behaviour must wrap
    the limiter themselves.
    """

    def __init__(
        self,
        store: CounterStore,
        config: RateLimitConfig,
        clock: Optional[Clock] = None,
    ):
        """Initialize rate limiter.

        Args:
            store: Shared counter store
            config: Window length, request budget and key prefix
            clock: Returns the current epoch milliseconds
        """
        if not isinstance(config, RateLimitConfig):
            raise ConfigurationError("config must be a RateLimitConfig")
        self._store = store
        self._config = config
        self._clock = clock or current_time_ms

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _build_key(self, identifier: str, endpoint: str) -> str:
        return f"{self._config.key_prefix}:{identifier}:{sanitize_endpoint(endpoint)}"

    async def check_limit(self, identifier: str, endpoint: str) -> RateLimitResult:
        """Record a request and decide whether it is allowed.

        Args:
            identifier: Subject of the limit (client address, user id, ...)
            endpoint: Request path or logical endpoint name

        Returns:
            RateLimitResult; retry_after is set only when denied
        """
        now = self._clock()
        window_ms = self._config.window_ms
        max_requests = self._config.max_requests
        reset_at = _to_datetime(now + window_ms)

        try:
            key = self._build_key(identifier, endpoint)
            count = await self._store.record_and_count(
                key,
                now_ms=now,
                token=secrets.token_hex(8),
                cutoff_ms=now - window_ms,
                ttl_ms=window_ms,
            )

            allowed = count <= max_requests
            remaining = max(0, max_requests - count)
            retry_after = None if allowed else await self._retry_after(key, now)

            return RateLimitResult(
                allowed=allowed,
                limit=max_requests,
                remaining=remaining,
                reset_at=reset_at,
                retry_after=retry_after,
            )
        except StoreUnavailableError as e:
            logger.warning(
                f"Rate limit store unavailable, failing open: {e}",
                extra={"identifier": identifier, "endpoint": endpoint},
            )
        except Exception as e:
            logger.warning(
                f"Unexpected rate limit error, failing open: {e}",
                extra={"identifier": identifier, "endpoint": endpoint},
                exc_info=True,
            )
        return self._fail_open(reset_at)

    def _fail_open(self, reset_at: datetime) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=self._config.max_requests,
            remaining=self._config.max_requests,
            reset_at=reset_at,
        )

    async def _retry_after(self, key: str, now: int) -> int:
        """Seconds until the oldest entry leaves the window."""
        fallback = math.ceil(self._config.window_ms / 1000)
        try:
            oldest = await self._store.oldest(key)
        except Exception as e:
            logger.debug(f"Could not read oldest entry for {key}: {e}")
            return fallback
        if oldest is None:
            return fallback
        return math.ceil(max(0, oldest + self._config.window_ms - now) / 1000)

    async def reset_limit(self, identifier: str, endpoint: Optional[str] = None) -> None:
        """Clear recorded requests.

        Args:
            identifier: Subject whose counters are cleared
            endpoint: Clear only this endpoint; all endpoints when omitted

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        if endpoint is not None:
            await self._store.delete(self._build_key(identifier, endpoint))
            return

        pattern = f"{escape_pattern(self._config.key_prefix)}:{escape_pattern(identifier)}:*"
        keys = await self._store.keys_matching(pattern)
        if keys:
            await self._store.delete(*keys)
        logger.info(
            f"Rate limits reset for {len(keys)} endpoint(s)",
            extra={"identifier": identifier},
        )

    async def get_current_count(self, identifier: str, endpoint: str) -> int:
        """Count requests in the current window without recording one."""
        now = self._clock()
        key = self._build_key(identifier, endpoint)
        try:
            await self._store.purge_before(key, now - self._config.window_ms)
            return await self._store.count(key)
        except Exception as e:
            logger.warning(
                f"Failed to read current count: {e}",
                extra={"identifier": identifier, "endpoint": endpoint},
            )
            return 0


def create_anonymous_rate_limiter(store: CounterStore, clock: Optional[Clock] = None) -> RateLimiter:
    """Create a rate limiter for anonymous traffic."""
    return RateLimiter(store, ANONYMOUS_CONFIG, clock=clock)


def create_authenticated_rate_limiter(store: CounterStore, clock: Optional[Clock] = None) -> RateLimiter:
    """Create a rate limiter for authenticated users."""
    return RateLimiter(store, AUTHENTICATED_CONFIG, clock=clock)


def create_custom_rate_limiter(
    store: CounterStore,
    config: RateLimitConfig,
    clock: Optional[Clock] = None,
) -> RateLimiter:
    """Create a rate limiter with a specific policy."""
    return RateLimiter(store, config, clock=clock)
