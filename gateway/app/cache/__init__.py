"""Cache adapter implementations for the identity cache."""

from .adapters import (
    BaseCacheAdapter,
    CacheError,
    InMemoryCacheAdapter,
    RedisCacheAdapter,
)

__all__ = [
    "BaseCacheAdapter",
    "CacheError",
    "InMemoryCacheAdapter",
    "RedisCacheAdapter",
]
