"""Windowed counter store shared by every stateless worker.

Provides the atomic primitives the rate limiter and brute-force protection
are built on: an ordered set keyed by millisecond timestamp, and integer
counters with expiry. Redis is the production backend; the in-memory
backend exists for development and tests and only protects one process.
"""

import asyncio
import fnmatch
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis.exceptions import RedisError

from shield.app.core.config import settings
from shield.app.core.logging import get_logger
from shield.app.core.redis_lua import INCREMENT_WITH_EXPIRY_SCRIPT
from shield.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], int]


def current_time_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_pattern(text: str) -> str:
    """Escape glob metacharacters so text matches only itself in keys_matching.

    Uses Redis MATCH syntax, where a backslash makes the next character literal.
    """
    return _GLOB_SPECIAL.sub(r"\\\1", text)


def _to_fnmatch(pattern: str) -> str:
    """Rewrite backslash escapes as single-character sets fnmatch understands."""
    parts = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            escaped = next(chars, "\\")
            parts.append(f"[{escaped}]")
        else:
            parts.append(char)
    return "".join(parts)


class CounterStore(ABC):
    """Abstract base class for counter store backends.

    Every operation is atomic per key. Implementations raise
    StoreUnavailableError when the backend cannot answer in time.
    """

    @abstractmethod
    async def insert(self, key: str, timestamp_ms: int, token: str) -> None:
        """Add a window entry scored by its timestamp."""

    @abstractmethod
    async def purge_before(self, key: str, cutoff_ms: int) -> int:
        """Remove window entries scored at or below cutoff_ms.

        Returns:
            Number of entries removed.
        """

    @abstractmethod
    async def count(self, key: str) -> int:
        """Return the number of window entries under key."""

    @abstractmethod
    async def oldest(self, key: str) -> Optional[float]:
        """Return the score of the earliest window entry, or None."""

    @abstractmethod
    async def set_expiry(self, key: str, ttl_ms: int) -> None:
        """Set a time-to-live on an existing key."""

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Atomically increment a counter and return the new value."""

    @abstractmethod
    async def increment_with_expiry(self, key: str, ttl_ms: int) -> int:
        """Increment a counter, setting ttl_ms only when the result is 1."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the scalar value at key, or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        """Store a scalar value with a time-to-live."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    async def keys_matching(self, pattern: str) -> list[str]:
        """Return keys matching a glob-style pattern."""

    @abstractmethod
    async def record_and_count(
        self,
        key: str,
        now_ms: int,
        token: str,
        cutoff_ms: int,
        ttl_ms: int,
    ) -> int:
        """Purge stale entries, add one, refresh expiry and return the count.

        All four steps happen in one atomic unit.
        """

    @abstractmethod
    async def ping(self) -> float:
        """Check connectivity and return the round-trip latency in ms."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCounterStore(CounterStore):
    """In-memory counter store with TTL support.

    State lives in this process only, so separate workers do not share
    counts. Suitable for development, tests and single-process deployments.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or current_time_ms
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _exists(self, key: str) -> bool:
        return key in self._sorted_sets or key in self._values

    def _evict_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._sorted_sets.pop(key, None)
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _purge(self, key: str, cutoff_ms: int) -> int:
        entries = self._sorted_sets.get(key)
        if not entries:
            return 0
        stale = [member for member, score in entries.items() if score <= cutoff_ms]
        for member in stale:
            del entries[member]
        if not entries:
            self._sorted_sets.pop(key, None)
            self._expires_at.pop(key, None)
        return len(stale)

    def _add(self, key: str, timestamp_ms: int, token: str) -> None:
        self._sorted_sets.setdefault(key, {})[f"{timestamp_ms}:{token}"] = float(timestamp_ms)

    def _expire(self, key: str, ttl_ms: int) -> None:
        if self._exists(key):
            self._expires_at[key] = self._clock() + ttl_ms

    def _incr(self, key: str) -> int:
        value = int(self._values.get(key, "0")) + 1
        self._values[key] = str(value)
        return value

    async def insert(self, key: str, timestamp_ms: int, token: str) -> None:
        async with self._lock:
            self._evict_if_expired(key)
            self._add(key, timestamp_ms, token)

    async def purge_before(self, key: str, cutoff_ms: int) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            return self._purge(key, cutoff_ms)

    async def count(self, key: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            return len(self._sorted_sets.get(key, {}))

    async def oldest(self, key: str) -> Optional[float]:
        async with self._lock:
            self._evict_if_expired(key)
            entries = self._sorted_sets.get(key)
            if not entries:
                return None
            return min(entries.values())

    async def set_expiry(self, key: str, ttl_ms: int) -> None:
        async with self._lock:
            self._evict_if_expired(key)
            self._expire(key, ttl_ms)

    async def increment(self, key: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            return self._incr(key)

    async def increment_with_expiry(self, key: str, ttl_ms: int) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            value = self._incr(key)
            if value == 1:
                self._expire(key, ttl_ms)
            return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            self._evict_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        async with self._lock:
            self._sorted_sets.pop(key, None)
            self._values[key] = value
            self._expire(key, ttl_ms)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            deleted = 0
            for key in keys:
                self._evict_if_expired(key)
                if self._exists(key):
                    deleted += 1
                self._sorted_sets.pop(key, None)
                self._values.pop(key, None)
                self._expires_at.pop(key, None)
            return deleted

    async def keys_matching(self, pattern: str) -> list[str]:
        async with self._lock:
            for key in list(self._expires_at):
                self._evict_if_expired(key)
            keys = set(self._sorted_sets) | set(self._values)
            pattern = _to_fnmatch(pattern)
            return sorted(k for k in keys if fnmatch.fnmatchcase(k, pattern))

    async def record_and_count(
        self,
        key: str,
        now_ms: int,
        token: str,
        cutoff_ms: int,
        ttl_ms: int,
    ) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            self._purge(key, cutoff_ms)
            self._add(key, now_ms, token)
            self._expire(key, ttl_ms)
            return len(self._sorted_sets[key])

    async def ping(self) -> float:
        return 0.0


class RedisCounterStore(CounterStore):
    """Redis-backed counter store.

    Window entries live in sorted sets scored by epoch milliseconds;
    counters are plain integer keys. Every call is bounded by a timeout and
    Redis failures surface as StoreUnavailableError.

    Example:
        >>> store = RedisCounterStore(create_redis_client())
        >>> await store.increment_with_expiry("auth:attempts:bob", 900_000)
    """

    def __init__(self, redis_client: Any, timeout: Optional[float] = None) -> None:
        """Initialize the store.

        Args:
            redis_client: A redis.asyncio client owned by the caller
            timeout: Per-operation timeout in seconds
        """
        self._redis = redis_client
        self._timeout = timeout if timeout is not None else settings.store_timeout_seconds

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(operation, "timed out") from e
        except RedisError as e:
            raise StoreUnavailableError(operation, str(e)) from e

    async def insert(self, key: str, timestamp_ms: int, token: str) -> None:
        await self._call("insert", self._redis.zadd(key, {f"{timestamp_ms}:{token}": timestamp_ms}))

    async def purge_before(self, key: str, cutoff_ms: int) -> int:
        return int(await self._call("purge_before", self._redis.zremrangebyscore(key, 0, cutoff_ms)))

    async def count(self, key: str) -> int:
        return int(await self._call("count", self._redis.zcard(key)))

    async def oldest(self, key: str) -> Optional[float]:
        entries = await self._call("oldest", self._redis.zrange(key, 0, 0, withscores=True))
        if not entries:
            return None
        _, score = entries[0]
        return float(score)

    async def set_expiry(self, key: str, ttl_ms: int) -> None:
        await self._call("set_expiry", self._redis.pexpire(key, ttl_ms))

    async def increment(self, key: str) -> int:
        return int(await self._call("increment", self._redis.incr(key)))

    async def increment_with_expiry(self, key: str, ttl_ms: int) -> int:
        result = await self._call(
            "increment_with_expiry",
            self._redis.eval(INCREMENT_WITH_EXPIRY_SCRIPT, 1, key, ttl_ms),
        )
        return int(result)

    async def get(self, key: str) -> Optional[str]:
        return _decode(await self._call("get", self._redis.get(key)))

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._call("set", self._redis.set(key, value, px=ttl_ms))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._redis.delete(*keys)))

    async def keys_matching(self, pattern: str) -> list[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server.
        async def _scan() -> list[str]:
            return [_decode(key) async for key in self._redis.scan_iter(match=pattern, count=500)]

        return await self._call("keys_matching", _scan())

    async def record_and_count(
        self,
        key: str,
        now_ms: int,
        token: str,
        cutoff_ms: int,
        ttl_ms: int,
    ) -> int:
        # MULTI/EXEC so concurrent workers see the purge, insert and count as
        # one step.
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, cutoff_ms)
        pipe.zadd(key, {f"{now_ms}:{token}": now_ms})
        pipe.zcard(key)
        pipe.pexpire(key, ttl_ms)
        results = await self._call("record_and_count", pipe.execute())
        return int(results[2])

    async def ping(self) -> float:
        start = time.perf_counter()
        await self._call("ping", self._redis.ping())
        return (time.perf_counter() - start) * 1000

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()
