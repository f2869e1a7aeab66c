"""Persistent counter stores for the rate limiter.

Every adapter honours the same contract:

* at most one live row per ``(identifier, identifier_type, endpoint)``;
* ``increment`` is a single atomic upsert that starts a fresh window when the
  stored one has ended, and returns the post-increment count;
* ``block`` atomically flips a row to blocked and moves its ``window_end``;
* driver failures surface as ``StoreUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis  # type: ignore[import]
from redis.exceptions import RedisError  # type: ignore[import]
from sqlalchemy import and_, case, delete, null, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from gateway.app.auth.errors import StoreUnavailable
from gateway.app.storage import from_db_time, to_db_time
from gateway.app.storage.database import DatabaseService
from gateway.app.storage.models import RateLimitRow

logger = logging.getLogger("ratelimit.store")


class Axis(str, Enum):
    IP = "ip"
    DEVICE = "device"
    USER = "user"


@dataclass(frozen=True)
class CounterKey:
    identifier: str
    axis: Axis
    scope: str


@dataclass(frozen=True)
class CounterRow:
    identifier: str
    identifier_type: str
    endpoint: str
    request_count: int
    window_start: float
    window_end: float
    is_blocked: bool = False
    block_reason: Optional[str] = None

    def is_live(self, now: float) -> bool:
        return self.window_end > now


class CounterStore:
    async def get_live(self, key: CounterKey, *, now: float) -> Optional[CounterRow]:
        raise NotImplementedError

    async def increment(self, key: CounterKey, *, now: float, window_seconds: float) -> int:
        raise NotImplementedError

    async def block(self, key: CounterKey, *, now: float, until: float, reason: str) -> None:
        raise NotImplementedError

    async def purge_expired(self, *, now: float) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """Single-process store; the lock makes each operation atomic."""

    def __init__(self) -> None:
        self._rows: dict[CounterKey, CounterRow] = {}
        self._lock = asyncio.Lock()

    async def get_live(self, key: CounterKey, *, now: float) -> Optional[CounterRow]:
        async with self._lock:
            row = self._rows.get(key)
            if row is None or not row.is_live(now):
                return None
            return row

    async def increment(self, key: CounterKey, *, now: float, window_seconds: float) -> int:
        async with self._lock:
            row = self._rows.get(key)
            if row is None or not row.is_live(now):
                row = CounterRow(
                    identifier=key.identifier,
                    identifier_type=key.axis.value,
                    endpoint=key.scope,
                    request_count=1,
                    window_start=now,
                    window_end=now + window_seconds,
                )
            else:
                row = replace(row, request_count=row.request_count + 1)
            self._rows[key] = row
            return row.request_count

    async def block(self, key: CounterKey, *, now: float, until: float, reason: str) -> None:
        async with self._lock:
            row = self._rows.get(key)
            if row is None or not row.is_live(now):
                row = CounterRow(
                    identifier=key.identifier,
                    identifier_type=key.axis.value,
                    endpoint=key.scope,
                    request_count=0,
                    window_start=now,
                    window_end=until,
                )
            self._rows[key] = replace(row, is_blocked=True, block_reason=reason, window_end=until)

    async def purge_expired(self, *, now: float) -> int:
        async with self._lock:
            expired = [key for key, row in self._rows.items() if not row.is_live(now)]
            for key in expired:
                self._rows.pop(key, None)
            return len(expired)


RATE_LIMIT_PREFIX = "ratelimit:"

# KEYS[1] counter hash; ARGV: now, window_end, expire_at_ms
_INCREMENT_SCRIPT = """
local window_end = redis.call('HGET', KEYS[1], 'window_end')
if (not window_end) or tonumber(window_end) <= tonumber(ARGV[1]) then
    redis.call('DEL', KEYS[1])
    redis.call('HSET', KEYS[1], 'request_count', 1, 'window_start', ARGV[1], 'window_end', ARGV[2], 'is_blocked', 0)
    redis.call('PEXPIREAT', KEYS[1], ARGV[3])
    return 1
end
return redis.call('HINCRBY', KEYS[1], 'request_count', 1)
"""

# KEYS[1] counter hash; ARGV: now, until, reason, expire_at_ms
_BLOCK_SCRIPT = """
local window_end = redis.call('HGET', KEYS[1], 'window_end')
if (not window_end) or tonumber(window_end) <= tonumber(ARGV[1]) then
    redis.call('DEL', KEYS[1])
    redis.call('HSET', KEYS[1], 'request_count', 0, 'window_start', ARGV[1])
end
redis.call('HSET', KEYS[1], 'is_blocked', 1, 'block_reason', ARGV[3], 'window_end', ARGV[2])
redis.call('PEXPIREAT', KEYS[1], ARGV[4])
return 1
"""


def _expire_at_ms(epoch_seconds: float) -> int:
    return int(math.ceil(epoch_seconds * 1000))


class RedisCounterStore(CounterStore):
    """Counters as Redis hashes that expire together with their window."""

    def __init__(self, url: str, *, client: Optional[Any] = None, prefix: str = RATE_LIMIT_PREFIX) -> None:
        self._client = client or redis.from_url(url, decode_responses=True)
        self._prefix = prefix
        self._increment = self._client.register_script(_INCREMENT_SCRIPT)
        self._block = self._client.register_script(_BLOCK_SCRIPT)

    def _key(self, key: CounterKey) -> str:
        return f"{self._prefix}{key.scope}:{key.axis.value}:{key.identifier}"

    @staticmethod
    def _text(value: Any) -> str:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def _parse(self, key: CounterKey, raw: dict[Any, Any]) -> Optional[CounterRow]:
        fields = {self._text(k): self._text(v) for k, v in raw.items()}
        if "window_end" not in fields:
            return None
        return CounterRow(
            identifier=key.identifier,
            identifier_type=key.axis.value,
            endpoint=key.scope,
            request_count=int(fields.get("request_count", "0")),
            window_start=float(fields.get("window_start", fields["window_end"])),
            window_end=float(fields["window_end"]),
            is_blocked=fields.get("is_blocked") == "1",
            block_reason=fields.get("block_reason") or None,
        )

    async def get_live(self, key: CounterKey, *, now: float) -> Optional[CounterRow]:
        try:
            raw = await self._client.hgetall(self._key(key))
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"Redis counter read failed: {exc}") from exc
        row = self._parse(key, raw) if raw else None
        if row is None or not row.is_live(now):
            return None
        return row

    async def increment(self, key: CounterKey, *, now: float, window_seconds: float) -> int:
        window_end = now + window_seconds
        try:
            result = await self._increment(
                keys=[self._key(key)],
                args=[repr(now), repr(window_end), _expire_at_ms(window_end)],
            )
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"Redis counter increment failed: {exc}") from exc
        return int(result)

    async def block(self, key: CounterKey, *, now: float, until: float, reason: str) -> None:
        try:
            await self._block(
                keys=[self._key(key)],
                args=[repr(now), repr(until), reason, _expire_at_ms(until)],
            )
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"Redis counter block failed: {exc}") from exc

    async def purge_expired(self, *, now: float) -> int:
        # Keys expire on their own; this only catches hashes that lost their TTL.
        removed = 0
        try:
            async for name in self._client.scan_iter(match=f"{self._prefix}*"):
                window_end = await self._client.hget(name, "window_end")
                if window_end is None or float(self._text(window_end)) <= now:
                    removed += int(await self._client.delete(name))
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"Redis counter cleanup failed: {exc}") from exc
        return removed

    async def close(self) -> None:
        await self._client.aclose()


class SqlCounterStore(CounterStore):
    """``rate_limits`` table with ``INSERT ... ON CONFLICT DO UPDATE`` upserts."""

    _KEY_COLUMNS = ("identifier", "identifier_type", "endpoint")

    def __init__(self, database: DatabaseService) -> None:
        self._db = database
        dialect = database.dialect
        if dialect == "sqlite":
            self._insert = sqlite.insert
        elif dialect == "postgresql":
            self._insert = postgresql.insert
        else:
            raise ValueError(f"Unsupported dialect for SqlCounterStore: {dialect}")

    @staticmethod
    def _match(key: CounterKey):
        return and_(
            RateLimitRow.identifier == key.identifier,
            RateLimitRow.identifier_type == key.axis.value,
            RateLimitRow.endpoint == key.scope,
        )

    @staticmethod
    def _to_row(record: RateLimitRow) -> CounterRow:
        return CounterRow(
            identifier=record.identifier,
            identifier_type=record.identifier_type,
            endpoint=record.endpoint,
            request_count=record.request_count,
            window_start=from_db_time(record.window_start),
            window_end=from_db_time(record.window_end),
            is_blocked=bool(record.is_blocked),
            block_reason=record.block_reason,
        )

    async def get_live(self, key: CounterKey, *, now: float) -> Optional[CounterRow]:
        query = select(RateLimitRow).where(self._match(key), RateLimitRow.window_end > to_db_time(now))
        try:
            async with self._db.session() as session:
                record = (await session.execute(query)).scalar_one_or_none()
                return self._to_row(record) if record is not None else None
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Counter read failed: {exc}") from exc

    async def increment(self, key: CounterKey, *, now: float, window_seconds: float) -> int:
        now_db = to_db_time(now)
        stmt = self._insert(RateLimitRow).values(
            identifier=key.identifier,
            identifier_type=key.axis.value,
            endpoint=key.scope,
            request_count=1,
            window_start=now_db,
            window_end=to_db_time(now + window_seconds),
            is_blocked=False,
        )
        # SET expressions read the pre-update row, so `ended` is evaluated once.
        ended = RateLimitRow.window_end <= now_db
        stmt = stmt.on_conflict_do_update(
            index_elements=list(self._KEY_COLUMNS),
            set_={
                "request_count": case((ended, 1), else_=RateLimitRow.request_count + 1),
                "window_start": case((ended, stmt.excluded.window_start), else_=RateLimitRow.window_start),
                "window_end": case((ended, stmt.excluded.window_end), else_=RateLimitRow.window_end),
                "is_blocked": case((ended, False), else_=RateLimitRow.is_blocked),
                "block_reason": case((ended, null()), else_=RateLimitRow.block_reason),
            },
        ).returning(RateLimitRow.request_count)
        try:
            async with self._db.session() as session:
                return int((await session.execute(stmt)).scalar_one())
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Counter increment failed: {exc}") from exc

    async def block(self, key: CounterKey, *, now: float, until: float, reason: str) -> None:
        now_db = to_db_time(now)
        stmt = self._insert(RateLimitRow).values(
            identifier=key.identifier,
            identifier_type=key.axis.value,
            endpoint=key.scope,
            request_count=0,
            window_start=now_db,
            window_end=to_db_time(until),
            is_blocked=True,
            block_reason=reason,
        )
        ended = RateLimitRow.window_end <= now_db
        stmt = stmt.on_conflict_do_update(
            index_elements=list(self._KEY_COLUMNS),
            set_={
                "request_count": case((ended, 0), else_=RateLimitRow.request_count),
                "window_start": case((ended, stmt.excluded.window_start), else_=RateLimitRow.window_start),
                "window_end": stmt.excluded.window_end,
                "is_blocked": True,
                "block_reason": stmt.excluded.block_reason,
            },
        )
        try:
            async with self._db.session() as session:
                await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Counter block failed: {exc}") from exc

    async def purge_expired(self, *, now: float) -> int:
        stmt = delete(RateLimitRow).where(RateLimitRow.window_end <= to_db_time(now))
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                return int(result.rowcount or 0)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Counter cleanup failed: {exc}") from exc


__all__ = [
    "Axis",
    "CounterKey",
    "CounterRow",
    "CounterStore",
    "InMemoryCounterStore",
    "RATE_LIMIT_PREFIX",
    "RedisCounterStore",
    "SqlCounterStore",
]
