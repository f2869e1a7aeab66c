from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest  # type: ignore[import]

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from gateway.app.ratelimit import (  # noqa: E402
    Axis,
    CounterKey,
    InMemoryCounterStore,
    RedisCounterStore,
    SqlCounterStore,
)
from gateway.app.storage.database import DatabaseService  # noqa: E402

NOW = 1_700_000_000.0
KEY = CounterKey("10.0.0.1", Axis.IP, "login")


async def _sqlite_store(tmp_path: Path) -> tuple[SqlCounterStore, DatabaseService]:
    database = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'counters.db'}")
    await database.initialize()
    return SqlCounterStore(database), database


@pytest.mark.asyncio
async def test_inmemory_concurrent_increments_are_not_lost() -> None:
    store = InMemoryCounterStore()

    results = await asyncio.gather(
        *(store.increment(KEY, now=NOW, window_seconds=60) for _ in range(50))
    )

    row = await store.get_live(KEY, now=NOW + 1)
    assert row is not None
    assert row.request_count == 50
    assert sorted(results) == list(range(1, 51))


@pytest.mark.asyncio
async def test_inmemory_increment_starts_fresh_window_after_expiry() -> None:
    store = InMemoryCounterStore()
    await store.increment(KEY, now=NOW, window_seconds=60)
    await store.increment(KEY, now=NOW + 10, window_seconds=60)

    assert await store.get_live(KEY, now=NOW + 61) is None
    assert await store.increment(KEY, now=NOW + 61, window_seconds=60) == 1

    row = await store.get_live(KEY, now=NOW + 62)
    assert row is not None
    assert row.window_start == NOW + 61
    assert row.window_end == NOW + 121


@pytest.mark.asyncio
async def test_inmemory_block_and_purge() -> None:
    store = InMemoryCounterStore()
    other = CounterKey("10.0.0.2", Axis.IP, "login")
    await store.increment(KEY, now=NOW, window_seconds=60)
    await store.increment(other, now=NOW, window_seconds=60)

    await store.block(KEY, now=NOW + 5, until=NOW + 3605, reason="Rate limit exceeded")

    blocked = await store.get_live(KEY, now=NOW + 100)
    assert blocked is not None
    assert blocked.is_blocked
    assert blocked.request_count == 1
    assert blocked.window_end == NOW + 3605

    assert await store.purge_expired(now=NOW + 100) == 1
    assert await store.get_live(other, now=NOW + 1) is None
    assert await store.get_live(KEY, now=NOW + 100) is not None


@pytest.mark.asyncio
async def test_sql_store_upserts_within_window(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        counts = [await store.increment(KEY, now=NOW + offset, window_seconds=60) for offset in range(5)]
        assert counts == [1, 2, 3, 4, 5]

        row = await store.get_live(KEY, now=NOW + 10)
        assert row is not None
        assert row.request_count == 5
        assert row.window_start == pytest.approx(NOW)
        assert row.window_end == pytest.approx(NOW + 60)
        assert not row.is_blocked
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_concurrent_increments_are_not_lost(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        await asyncio.gather(*(store.increment(KEY, now=NOW, window_seconds=60) for _ in range(50)))

        row = await store.get_live(KEY, now=NOW + 1)
        assert row is not None
        assert row.request_count == 50
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_store_resets_expired_window_in_place(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        await store.increment(KEY, now=NOW, window_seconds=60)
        await store.increment(KEY, now=NOW + 1, window_seconds=60)

        assert await store.get_live(KEY, now=NOW + 60) is None
        assert await store.increment(KEY, now=NOW + 61, window_seconds=60) == 1

        row = await store.get_live(KEY, now=NOW + 62)
        assert row is not None
        assert row.window_start == pytest.approx(NOW + 61)
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_store_block_keeps_count_and_extends_window(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        for offset in range(3):
            await store.increment(KEY, now=NOW + offset, window_seconds=60)

        await store.block(KEY, now=NOW + 3, until=NOW + 3603, reason="Rate limit exceeded")

        row = await store.get_live(KEY, now=NOW + 120)
        assert row is not None
        assert row.is_blocked
        assert row.block_reason == "Rate limit exceeded"
        assert row.request_count == 3
        assert row.window_end == pytest.approx(NOW + 3603)
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_store_block_without_prior_row(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        await store.block(KEY, now=NOW, until=NOW + 60, reason="Rate limit exceeded")
        row = await store.get_live(KEY, now=NOW + 1)
        assert row is not None
        assert row.is_blocked
        assert row.request_count == 0
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_store_purge_removes_only_expired_rows(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        live = CounterKey("device-a", Axis.DEVICE, "api")
        await store.increment(KEY, now=NOW, window_seconds=60)
        await store.increment(live, now=NOW, window_seconds=600)

        assert await store.purge_expired(now=NOW + 61) == 1
        assert await store.get_live(live, now=NOW + 61) is not None
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sql_store_keeps_axes_and_scopes_apart(tmp_path: Path) -> None:
    store, database = await _sqlite_store(tmp_path)
    try:
        await store.increment(KEY, now=NOW, window_seconds=60)
        await store.increment(CounterKey("10.0.0.1", Axis.IP, "register"), now=NOW, window_seconds=60)
        await store.increment(CounterKey("10.0.0.1", Axis.DEVICE, "login"), now=NOW, window_seconds=60)
        assert await store.increment(KEY, now=NOW + 1, window_seconds=60) == 2
    finally:
        await database.close()


def _fake_redis_client():
    pytest.importorskip("lupa")
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    return fakeredis_module.FakeRedis(decode_responses=True)


@pytest.mark.asyncio
async def test_redis_store_increment_block_and_reset() -> None:
    store = RedisCounterStore("redis://unused", client=_fake_redis_client())
    # Keys expire at wall-clock time, so the window has to lie in the future.
    now = time.time()

    assert await store.increment(KEY, now=now, window_seconds=60) == 1
    assert await store.increment(KEY, now=now + 1, window_seconds=60) == 2

    row = await store.get_live(KEY, now=now + 2)
    assert row is not None
    assert row.request_count == 2
    assert row.window_end == pytest.approx(now + 60)

    await store.block(KEY, now=now + 2, until=now + 3602, reason="Rate limit exceeded")
    blocked = await store.get_live(KEY, now=now + 100)
    assert blocked is not None
    assert blocked.is_blocked
    assert blocked.request_count == 2

    assert await store.increment(KEY, now=now + 3603, window_seconds=60) == 1


@pytest.mark.asyncio
async def test_redis_store_concurrent_increments() -> None:
    store = RedisCounterStore("redis://unused", client=_fake_redis_client())
    now = time.time()

    await asyncio.gather(*(store.increment(KEY, now=now, window_seconds=60) for _ in range(25)))

    row = await store.get_live(KEY, now=now + 1)
    assert row is not None
    assert row.request_count == 25
