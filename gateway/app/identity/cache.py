from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from gateway.app import config
from gateway.app.auth.schemas import Identity
from gateway.app.cache import BaseCacheAdapter, CacheError
from gateway.app.utils.observability import record_identity_cache_lookup

logger = logging.getLogger("identity.cache")

IDENTITY_KEY_PREFIX = "identity:"


def identity_cache_key(identity_id: str) -> str:
    return f"{IDENTITY_KEY_PREFIX}{identity_id}"


class IdentityCache:
    """Identity entries keyed by id.

    The cache is an accelerator only: backend errors and undecodable entries
    read as misses so the caller re-fetches from the identity store, and write
    failures are logged and skipped. Concurrent misses overwrite each other
    with identical data.
    """

    def __init__(self, adapter: BaseCacheAdapter, *, ttl_seconds: Optional[int] = None) -> None:
        self._adapter = adapter
        self._ttl = ttl_seconds or config.IDENTITY_CACHE_TTL_SECONDS

    async def get(self, identity_id: str) -> Optional[Identity]:
        key = identity_cache_key(identity_id)
        try:
            blob = await self._adapter.get(key)
        except CacheError as exc:
            record_identity_cache_lookup("error")
            logger.warning("Identity cache read failed for %s: %s", identity_id, exc)
            return None
        if blob is None:
            record_identity_cache_lookup("miss")
            return None
        try:
            identity = Identity.model_validate(json.loads(blob.decode("utf-8")))
        except (ValueError, ValidationError) as exc:
            record_identity_cache_lookup("corrupt")
            logger.warning("Discarding undecodable identity cache entry %s: %s", identity_id, exc)
            return None
        record_identity_cache_lookup("hit")
        return identity

    async def set(self, identity: Identity) -> None:
        payload = json.dumps(identity.model_dump(), separators=(",", ":")).encode("utf-8")
        try:
            await self._adapter.set(identity_cache_key(identity.id), payload, self._ttl)
        except CacheError as exc:
            logger.warning("Identity cache write failed for %s: %s", identity.id, exc)

    async def invalidate(self, identity_id: str) -> None:
        try:
            await self._adapter.delete(identity_cache_key(identity_id))
        except CacheError as exc:
            logger.warning("Identity cache invalidation failed for %s: %s", identity_id, exc)

    async def close(self) -> None:
        await self._adapter.close()


__all__ = ["IDENTITY_KEY_PREFIX", "IdentityCache", "identity_cache_key"]
