"""Tests for the sliding window rate limiter."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.exceptions

from shield.app.core.store import CounterStore, RedisCounterStore
from shield.app.exceptions import ConfigurationError
from shield.app.services.rate_limiter import (
    ANONYMOUS_CONFIG,
    AUTHENTICATED_CONFIG,
    RateLimitConfig,
    RateLimiter,
    create_anonymous_rate_limiter,
    create_authenticated_rate_limiter,
    create_custom_rate_limiter,
    sanitize_endpoint,
)


class TestRateLimitConfig:
    """Tests for policy validation."""

    def test_defaults(self):
        assert ANONYMOUS_CONFIG.window_ms == 60_000
        assert ANONYMOUS_CONFIG.max_requests == 100
        assert AUTHENTICATED_CONFIG.window_ms == 3_600_000
        assert AUTHENTICATED_CONFIG.max_requests == 500

    @pytest.mark.parametrize("window_ms", [0, -1, 1.5])
    def test_rejects_bad_window(self, window_ms):
        with pytest.raises(ConfigurationError):
            RateLimitConfig(window_ms=window_ms, max_requests=1)

    def test_rejects_negative_max(self):
        with pytest.raises(ConfigurationError):
            RateLimitConfig(window_ms=1000, max_requests=-1)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            RateLimitConfig(window_ms=1000, max_requests=1, key_prefix="")

    def test_limiter_requires_config(self, store):
        with pytest.raises(ConfigurationError):
            RateLimiter(store, {"window_ms": 1000, "max_requests": 1})


class TestSanitizeEndpoint:

    def test_strips_api_prefix_and_slashes(self):
        assert sanitize_endpoint("/api/projects/42") == "projects:42"

    def test_replaces_unsafe_characters(self):
        assert sanitize_endpoint("/api/search?q=a b") == "search_q_a_b"

    def test_leaves_other_paths(self):
        assert sanitize_endpoint("/health") == ":health"


class TestCheckLimit:
    """Tests for RateLimiter.check_limit."""

    @pytest.mark.asyncio
    async def test_hundred_and_first_request_is_denied(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=60_000, max_requests=100), clock=clock)

        for i in range(100):
            result = await limiter.check_limit("1.2.3.4", "/api/projects")
            assert result.allowed
            assert result.remaining == 99 - i
            assert result.retry_after is None

        result = await limiter.check_limit("1.2.3.4", "/api/projects")

        assert not result.allowed
        assert result.limit == 100
        assert result.remaining == 0
        assert result.retry_after == 60

    @pytest.mark.asyncio
    async def test_fourth_call_within_window_is_denied(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=60_000, max_requests=3), clock=clock)

        results = []
        for _ in range(4):
            results.append(await limiter.check_limit("1.2.3.4", "/api/login"))
            clock.advance(10)

        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[3].retry_after == 60

    @pytest.mark.asyncio
    async def test_reset_at_is_now_plus_window(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=60_000, max_requests=5), clock=clock)

        result = await limiter.check_limit("a", "/x")

        assert result.reset_at.timestamp() * 1000 == clock.now + 60_000

    @pytest.mark.asyncio
    async def test_zero_budget_denies_first_request(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=0), clock=clock)

        result = await limiter.check_limit("a", "/x")

        assert not result.allowed
        assert result.remaining == 0
        assert result.retry_after == 1

    @pytest.mark.asyncio
    async def test_entry_at_window_boundary_is_excluded(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1), clock=clock)

        assert (await limiter.check_limit("a", "/x")).allowed
        clock.advance(999)
        assert not (await limiter.check_limit("a", "/x")).allowed

        # First entry is now exactly window_ms old; the denied one at +999 remains.
        clock.advance(1)
        result = await limiter.check_limit("a", "/x")
        assert not result.allowed

        clock.advance(1000)
        assert (await limiter.check_limit("a", "/x")).allowed

    @pytest.mark.asyncio
    async def test_window_slides_instead_of_resetting(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=2), clock=clock)
        start = clock.now

        assert (await limiter.check_limit("a", "/x")).allowed
        clock.now = start + 500
        assert (await limiter.check_limit("a", "/x")).allowed

        clock.now = start + 1001
        assert await limiter.get_current_count("a", "/x") == 1
        result = await limiter.check_limit("a", "/x")
        assert result.allowed
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_retry_after_tracks_oldest_entry(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=10_000, max_requests=1), clock=clock)

        await limiter.check_limit("a", "/x")
        clock.advance(7_500)
        result = await limiter.check_limit("a", "/x")

        assert result.retry_after == 3

    @pytest.mark.asyncio
    async def test_retry_after_falls_back_to_window(self, clock):
        store = AsyncMock(spec=CounterStore)
        store.record_and_count.return_value = 5
        store.oldest.return_value = None
        limiter = RateLimiter(store, RateLimitConfig(window_ms=30_000, max_requests=1), clock=clock)

        result = await limiter.check_limit("a", "/x")

        assert result.retry_after == 30

    @pytest.mark.asyncio
    async def test_identifiers_and_endpoints_are_isolated(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1), clock=clock)

        assert (await limiter.check_limit("a", "/x")).allowed
        assert (await limiter.check_limit("b", "/x")).allowed
        assert (await limiter.check_limit("a", "/y")).allowed
        assert not (await limiter.check_limit("a", "/x")).allowed

    @pytest.mark.asyncio
    async def test_limiters_share_state_through_store(self, store, clock):
        config = RateLimitConfig(window_ms=1000, max_requests=1)
        first = RateLimiter(store, config, clock=clock)
        second = RateLimiter(store, config, clock=clock)

        assert (await first.check_limit("a", "/x")).allowed
        assert not (await second.check_limit("a", "/x")).allowed

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, broken_store, clock):
        limiter = RateLimiter(broken_store, RateLimitConfig(window_ms=1000, max_requests=7), clock=clock)

        with patch("shield.app.services.rate_limiter.logger") as mock_logger:
            result = await limiter.check_limit("a", "/x")

        assert result.allowed
        assert result.limit == 7
        assert result.remaining == 7
        assert result.retry_after is None
        mock_logger.warning.assert_called_once()
        assert "failing open" in mock_logger.warning.call_args[0][0]

    @pytest.mark.asyncio
    async def test_redis_connection_refused_fails_open(self, clock):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=redis.exceptions.ConnectionError("Connection refused"))
        client.pipeline.return_value = pipe
        limiter = RateLimiter(
            RedisCounterStore(client, timeout=1.0),
            RateLimitConfig(window_ms=1000, max_requests=3),
            clock=clock,
        )

        result = await limiter.check_limit("a", "/x")

        assert result.allowed
        assert result.remaining == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_open(self, clock):
        store = AsyncMock(spec=CounterStore)
        store.record_and_count.side_effect = RuntimeError("boom")
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=3), clock=clock)

        result = await limiter.check_limit("a", "/x")

        assert result.allowed


class TestResetAndCount:
    """Tests for reset_limit and get_current_count."""

    @pytest.mark.asyncio
    async def test_reset_single_endpoint(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1), clock=clock)
        await limiter.check_limit("a", "/x")
        await limiter.check_limit("a", "/y")

        await limiter.reset_limit("a", "/x")

        assert await limiter.get_current_count("a", "/x") == 0
        assert await limiter.get_current_count("a", "/y") == 1

    @pytest.mark.asyncio
    async def test_reset_all_endpoints(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1), clock=clock)
        await limiter.check_limit("a", "/x")
        await limiter.check_limit("a", "/y")
        await limiter.check_limit("b", "/x")

        await limiter.reset_limit("a")

        assert await limiter.get_current_count("a", "/x") == 0
        assert await limiter.get_current_count("a", "/y") == 0
        assert await limiter.get_current_count("b", "/x") == 1
        assert (await limiter.check_limit("a", "/x")).allowed

    @pytest.mark.parametrize("identifier", ["10.0.0.?", "10.0.0.*", "10.0.0.[12]"])
    @pytest.mark.asyncio
    async def test_reset_treats_glob_characters_literally(self, store, clock, identifier):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1), clock=clock)
        await limiter.check_limit("10.0.0.1", "/x")
        await limiter.check_limit("10.0.0.2", "/x")
        await limiter.check_limit(identifier, "/x")

        await limiter.reset_limit(identifier)

        assert await limiter.get_current_count(identifier, "/x") == 0
        assert await limiter.get_current_count("10.0.0.1", "/x") == 1
        assert await limiter.get_current_count("10.0.0.2", "/x") == 1

    @pytest.mark.asyncio
    async def test_reset_sends_escaped_pattern(self):
        store = AsyncMock(spec=CounterStore)
        store.keys_matching.return_value = []
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=1, key_prefix="rl"))

        await limiter.reset_limit("a*b")

        store.keys_matching.assert_awaited_once_with("rl:a\\*b:*")
        store.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_reset_propagates_store_errors(self, broken_store):
        limiter = RateLimiter(broken_store, RateLimitConfig(window_ms=1000, max_requests=1))

        with pytest.raises(Exception):
            await limiter.reset_limit("a")

    @pytest.mark.asyncio
    async def test_get_current_count_does_not_record(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(window_ms=1000, max_requests=5), clock=clock)
        await limiter.check_limit("a", "/x")

        assert await limiter.get_current_count("a", "/x") == 1
        assert await limiter.get_current_count("a", "/x") == 1

    @pytest.mark.asyncio
    async def test_get_current_count_on_outage_is_zero(self, broken_store):
        limiter = RateLimiter(broken_store, RateLimitConfig(window_ms=1000, max_requests=5))

        assert await limiter.get_current_count("a", "/x") == 0


class TestFactories:

    def test_factories_use_named_policies(self, store):
        assert create_anonymous_rate_limiter(store).config is ANONYMOUS_CONFIG
        assert create_authenticated_rate_limiter(store).config is AUTHENTICATED_CONFIG

        custom = RateLimitConfig(window_ms=5000, max_requests=3, key_prefix="ratelimit:custom")
        assert create_custom_rate_limiter(store, custom).config is custom
