"""Core utilities for the abuse protection service."""

from shield.app.core.config import settings
from shield.app.core.logging import get_logger, setup_logging
from shield.app.core.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    current_time_ms,
)

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "current_time_ms",
]
