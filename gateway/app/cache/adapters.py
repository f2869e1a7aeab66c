from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as redis  # type: ignore[import]
from redis.exceptions import RedisError  # type: ignore[import]

logger = logging.getLogger("cache.adapters")


class CacheError(RuntimeError):
    """The cache backend could not serve the request."""


@dataclass(frozen=True)
class CacheEntry:
    payload: bytes
    expires_at: float


class BaseCacheAdapter:
    """Byte-valued key/value store with per-entry TTL.

    Keys are qualified with an optional namespace so several deployments can
    share one Redis database.
    """

    def __init__(self, *, namespace: Optional[str] = None) -> None:
        self._namespace = namespace.strip() if namespace else None

    def qualify(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    async def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RedisCacheAdapter(BaseCacheAdapter):
    def __init__(self, url: str, *, client: Optional[Any] = None, namespace: Optional[str] = None) -> None:
        super().__init__(namespace=namespace)
        self._client = client or redis.from_url(url, decode_responses=False)

    async def get(self, key: str) -> Optional[bytes]:
        try:
            blob = await self._client.get(self.qualify(key))
        except (RedisError, OSError) as exc:
            raise CacheError(f"Redis GET {key} failed: {exc}") from exc
        if blob is None or isinstance(blob, bytes):
            return blob
        if isinstance(blob, str):
            return blob.encode("utf-8")
        logger.warning("Ignoring non-bytes Redis value for %s (%s)", key, type(blob).__name__)
        return None

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._client.set(self.qualify(key), value, ex=max(ttl_seconds, 1))
        except (RedisError, OSError) as exc:
            raise CacheError(f"Redis SET {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self.qualify(key))
        except (RedisError, OSError) as exc:
            raise CacheError(f"Redis DEL {key} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryCacheAdapter(BaseCacheAdapter):
    """Per-process cache; once ``max_entries`` is reached the least recently written key is dropped."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int = 10_000,
        namespace: Optional[str] = None,
    ) -> None:
        super().__init__(namespace=namespace)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._clock = clock
        self._max_entries = max(max_entries, 1)

    async def get(self, key: str) -> Optional[bytes]:
        qualified = self.qualify(key)
        async with self._lock:
            entry = self._entries.get(qualified)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[qualified]
                return None
            return entry.payload

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        qualified = self.qualify(key)
        entry = CacheEntry(payload=value, expires_at=self._clock() + max(ttl_seconds, 1))
        async with self._lock:
            self._entries.pop(qualified, None)
            self._entries[qualified] = entry
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(self.qualify(key), None)
