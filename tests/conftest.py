"""Shared fixtures for abuse protection tests."""

from unittest.mock import AsyncMock

import pytest

from shield.app.core.store import CounterStore, InMemoryCounterStore
from shield.app.exceptions import StoreUnavailableError

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store sharing the test clock, so TTLs follow clock.advance."""
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def broken_store():
    """Store where every operation fails as if Redis were down."""
    store = AsyncMock(spec=CounterStore)
    outage = StoreUnavailableError("any", "connection refused")
    for name in (
        "insert", "purge_before", "count", "oldest", "set_expiry", "increment",
        "increment_with_expiry", "get", "set", "delete", "keys_matching",
        "record_and_count", "ping",
    ):
        getattr(store, name).side_effect = outage
    return store
