"""Persistent multi-axis rate limiting."""

from .engine import Decision, RateLimitConfig, RateLimiter, RateLimitSweeper, Target, build_targets
from .store import (
    Axis,
    CounterKey,
    CounterRow,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    SqlCounterStore,
)

__all__ = [
    "Axis",
    "CounterKey",
    "CounterRow",
    "CounterStore",
    "Decision",
    "InMemoryCounterStore",
    "RateLimitConfig",
    "RateLimitSweeper",
    "RateLimiter",
    "RedisCounterStore",
    "SqlCounterStore",
    "Target",
    "build_targets",
]
