from __future__ import annotations

import sys
from pathlib import Path

import pytest  # type: ignore[import]

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from gateway.app.security.session_store import (  # noqa: E402
    InMemorySessionAdapter,
    SessionStorageAdapter,
    SessionStore,
    SqlSessionAdapter,
)
from gateway.app.storage.database import DatabaseService  # noqa: E402


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


async def _sqlite_adapter(tmp_path: Path) -> tuple[SqlSessionAdapter, DatabaseService]:
    database = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    await database.initialize()
    return SqlSessionAdapter(database), database


async def _exercise_lifecycle(adapter: SessionStorageAdapter) -> None:
    clock = _Clock()
    store = SessionStore(adapter=adapter, session_ttl_seconds=3600, clock=clock)

    record = await store.create_session(
        user_id="user-1",
        session_id="session-1",
        device_fingerprint="abc123",
        ip_address="10.0.0.1",
        user_agent="pytest-agent",
    )
    assert record.expires_at == clock.now + 3600

    found = await store.find_active("session-1", "user-1")
    assert found is not None
    assert found.device_fingerprint == "abc123"

    # Bound to exactly one user.
    assert await store.find_active("session-1", "user-2") is None

    clock.now += 120
    await store.touch("session-1")
    touched = await store.find_active("session-1", "user-1")
    assert touched is not None
    assert touched.last_activity == pytest.approx(clock.now)

    clock.now += 3600
    assert await store.find_active("session-1", "user-1") is None


@pytest.mark.asyncio
async def test_inmemory_session_lifecycle() -> None:
    await _exercise_lifecycle(InMemorySessionAdapter())


@pytest.mark.asyncio
async def test_sql_session_lifecycle(tmp_path: Path) -> None:
    adapter, database = await _sqlite_adapter(tmp_path)
    try:
        await _exercise_lifecycle(adapter)
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_revoke_and_revoke_all() -> None:
    store = SessionStore(adapter=InMemorySessionAdapter())
    await store.create_session(user_id="user-1", session_id="a")
    await store.create_session(user_id="user-1", session_id="b")
    await store.create_session(user_id="user-2", session_id="c")

    assert await store.revoke("a") is True
    assert await store.revoke("a") is False
    assert await store.find_active("a", "user-1") is None

    assert await store.revoke_all_for_user("user-1", reason="admin") == 1
    assert await store.find_active("b", "user-1") is None
    assert await store.find_active("c", "user-2") is not None


@pytest.mark.asyncio
async def test_sql_revoke_records_reason(tmp_path: Path) -> None:
    adapter, database = await _sqlite_adapter(tmp_path)
    try:
        store = SessionStore(adapter=adapter)
        await store.create_session(user_id="user-1", session_id="a")
        await store.create_session(user_id="user-1", session_id="b")

        assert await store.revoke("a", reason="manual") is True
        assert await store.revoke_all_for_user("user-1") == 1
        assert await store.find_active("b", "user-1") is None
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_unknown_logout_reason_is_rejected() -> None:
    store = SessionStore(adapter=InMemorySessionAdapter())
    await store.create_session(user_id="user-1", session_id="a")
    with pytest.raises(ValueError):
        await store.revoke("a", reason="bored")


@pytest.mark.asyncio
async def test_session_id_cannot_move_between_users() -> None:
    store = SessionStore(adapter=InMemorySessionAdapter())
    await store.create_session(user_id="user-1", session_id="shared")
    with pytest.raises(ValueError):
        await store.create_session(user_id="user-2", session_id="shared")


@pytest.mark.asyncio
async def test_sql_session_id_cannot_move_between_users(tmp_path: Path) -> None:
    adapter, database = await _sqlite_adapter(tmp_path)
    try:
        store = SessionStore(adapter=adapter)
        await store.create_session(user_id="user-1", session_id="shared")
        with pytest.raises(ValueError):
            await store.create_session(user_id="user-2", session_id="shared")
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_purge_expired_sessions() -> None:
    clock = _Clock()
    store = SessionStore(adapter=InMemorySessionAdapter(), clock=clock)
    await store.create_session(user_id="user-1", session_id="short", ttl_seconds=10)
    await store.create_session(user_id="user-1", session_id="long", ttl_seconds=1000)

    clock.now += 11
    assert await store.purge_expired() == 1
    assert await store.find_active("long", "user-1") is not None


@pytest.mark.asyncio
async def test_sql_purge_expired_sessions(tmp_path: Path) -> None:
    adapter, database = await _sqlite_adapter(tmp_path)
    try:
        clock = _Clock()
        store = SessionStore(adapter=adapter, clock=clock)
        await store.create_session(user_id="user-1", session_id="short", ttl_seconds=10)
        await store.create_session(user_id="user-1", session_id="long", ttl_seconds=1000)

        clock.now += 11
        assert await store.purge_expired() == 1
        assert await store.find_active("long", "user-1") is not None
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_non_positive_ttl_falls_back_to_default() -> None:
    clock = _Clock()
    store = SessionStore(adapter=InMemorySessionAdapter(), session_ttl_seconds=500, clock=clock)
    record = await store.create_session(user_id="user-1", ttl_seconds=0)
    assert record.expires_at == clock.now + 500
    assert len(record.session_id) == 32
