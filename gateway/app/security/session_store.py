from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, replace
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from gateway.app import config
from gateway.app.auth.errors import StoreUnavailable
from gateway.app.storage import from_db_time, to_db_time
from gateway.app.storage.database import DatabaseService
from gateway.app.storage.models import UserSessionRow
from gateway.app.utils.observability import record_session_revocation

logger = logging.getLogger("auth.session_store")

LOGOUT_REASONS = frozenset({"manual", "expired", "security", "admin"})


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    user_id: str
    device_fingerprint: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    expires_at: float
    last_activity: float
    is_active: bool = True
    logout_reason: Optional[str] = None

    def is_valid_for(self, user_id: str, now: float) -> bool:
        return self.is_active and self.user_id == user_id and self.expires_at > now


class SessionStorageAdapter:
    async def persist(self, record: SessionRecord) -> None:
        raise NotImplementedError

    async def find_active(self, session_id: str, user_id: str, now: float) -> Optional[SessionRecord]:
        raise NotImplementedError

    async def touch(self, session_id: str, now: float) -> None:
        raise NotImplementedError

    async def revoke(self, session_id: str, reason: str, now: float) -> bool:
        raise NotImplementedError

    async def revoke_all_for_user(self, user_id: str, reason: str, now: float) -> int:
        raise NotImplementedError

    async def purge_expired(self, now: float) -> int:
        raise NotImplementedError


class InMemorySessionAdapter(SessionStorageAdapter):
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    async def persist(self, record: SessionRecord) -> None:
        async with self._lock:
            existing = self._sessions.get(record.session_id)
            if existing is not None and existing.user_id != record.user_id:
                raise ValueError("Session id already belongs to another user")
            self._sessions[record.session_id] = record

    async def find_active(self, session_id: str, user_id: str, now: float) -> Optional[SessionRecord]:
        async with self._lock:
            record = self._sessions.get(session_id)
            if record is None or not record.is_valid_for(user_id, now):
                return None
            return record

    async def touch(self, session_id: str, now: float) -> None:
        async with self._lock:
            record = self._sessions.get(session_id)
            if record is not None and record.is_active:
                self._sessions[session_id] = replace(record, last_activity=now)

    async def revoke(self, session_id: str, reason: str, now: float) -> bool:
        async with self._lock:
            record = self._sessions.get(session_id)
            if record is None or not record.is_active:
                return False
            self._sessions[session_id] = replace(record, is_active=False, logout_reason=reason)
            return True

    async def revoke_all_for_user(self, user_id: str, reason: str, now: float) -> int:
        async with self._lock:
            revoked = 0
            for session_id, record in list(self._sessions.items()):
                if record.user_id == user_id and record.is_active:
                    self._sessions[session_id] = replace(record, is_active=False, logout_reason=reason)
                    revoked += 1
            return revoked

    async def purge_expired(self, now: float) -> int:
        async with self._lock:
            expired = [sid for sid, record in self._sessions.items() if record.expires_at <= now]
            for session_id in expired:
                self._sessions.pop(session_id, None)
            return len(expired)


class SqlSessionAdapter(SessionStorageAdapter):
    def __init__(self, database: DatabaseService) -> None:
        self._db = database

    @staticmethod
    def _to_record(row: UserSessionRow) -> SessionRecord:
        return SessionRecord(
            session_id=row.session_id,
            user_id=row.user_id,
            device_fingerprint=row.device_fingerprint,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            expires_at=from_db_time(row.expires_at),
            last_activity=from_db_time(row.last_activity),
            is_active=bool(row.is_active),
            logout_reason=row.logout_reason,
        )

    async def persist(self, record: SessionRecord) -> None:
        try:
            async with self._db.session() as session:
                existing = (
                    await session.execute(select(UserSessionRow).where(UserSessionRow.session_id == record.session_id))
                ).scalar_one_or_none()
                if existing is None:
                    session.add(
                        UserSessionRow(
                            session_id=record.session_id,
                            user_id=record.user_id,
                            ip_address=record.ip_address,
                            user_agent=record.user_agent,
                            device_fingerprint=record.device_fingerprint,
                            is_active=record.is_active,
                            last_activity=to_db_time(record.last_activity),
                            expires_at=to_db_time(record.expires_at),
                        )
                    )
                    return
                if existing.user_id != record.user_id:
                    raise ValueError("Session id already belongs to another user")
                existing.last_activity = to_db_time(record.last_activity)
                existing.expires_at = to_db_time(record.expires_at)
                existing.is_active = record.is_active
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Session write failed: {exc}") from exc

    async def find_active(self, session_id: str, user_id: str, now: float) -> Optional[SessionRecord]:
        query = select(UserSessionRow).where(
            UserSessionRow.session_id == session_id,
            UserSessionRow.user_id == user_id,
            UserSessionRow.is_active.is_(True),
            UserSessionRow.expires_at > to_db_time(now),
        )
        try:
            async with self._db.session() as session:
                row = (await session.execute(query)).scalar_one_or_none()
                return self._to_record(row) if row is not None else None
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Session lookup failed: {exc}") from exc

    async def touch(self, session_id: str, now: float) -> None:
        stmt = (
            update(UserSessionRow)
            .where(UserSessionRow.session_id == session_id, UserSessionRow.is_active.is_(True))
            .values(last_activity=to_db_time(now))
        )
        try:
            async with self._db.session() as session:
                await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Session touch failed: {exc}") from exc

    async def _deactivate(self, condition, reason: str, now: float) -> int:
        stmt = (
            update(UserSessionRow)
            .where(condition, UserSessionRow.is_active.is_(True))
            .values(is_active=False, logout_at=to_db_time(now), logout_reason=reason)
        )
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                return int(result.rowcount or 0)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Session revocation failed: {exc}") from exc

    async def revoke(self, session_id: str, reason: str, now: float) -> bool:
        return await self._deactivate(UserSessionRow.session_id == session_id, reason, now) > 0

    async def revoke_all_for_user(self, user_id: str, reason: str, now: float) -> int:
        return await self._deactivate(UserSessionRow.user_id == user_id, reason, now)

    async def purge_expired(self, now: float) -> int:
        stmt = UserSessionRow.__table__.delete().where(UserSessionRow.expires_at <= to_db_time(now))
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                return int(result.rowcount or 0)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"Session cleanup failed: {exc}") from exc


class SessionStore:
    def __init__(
        self,
        *,
        adapter: Optional[SessionStorageAdapter] = None,
        session_ttl_seconds: Optional[int] = None,
        clock=time.time,
    ) -> None:
        self._adapter = adapter or InMemorySessionAdapter()
        self._ttl = self._resolve_ttl(session_ttl_seconds, config.SESSION_TTL_SECONDS)
        self._clock = clock

    async def create_session(
        self,
        *,
        user_id: str,
        session_id: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            session_id=session_id or secrets.token_hex(16),
            user_id=str(user_id),
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=now + self._resolve_ttl(ttl_seconds, self._ttl),
            last_activity=now,
        )
        await self._adapter.persist(record)
        return record

    async def find_active(self, session_id: str, user_id: str) -> Optional[SessionRecord]:
        return await self._adapter.find_active(session_id, str(user_id), self._clock())

    async def touch(self, session_id: str) -> None:
        await self._adapter.touch(session_id, self._clock())

    async def revoke(self, session_id: str, reason: str = "manual") -> bool:
        revoked = await self._adapter.revoke(session_id, self._check_reason(reason), self._clock())
        if revoked:
            record_session_revocation(reason)
        return revoked

    async def revoke_all_for_user(self, user_id: str, reason: str = "security") -> int:
        revoked = await self._adapter.revoke_all_for_user(str(user_id), self._check_reason(reason), self._clock())
        if revoked:
            record_session_revocation(reason)
        return revoked

    async def purge_expired(self) -> int:
        try:
            removed = await self._adapter.purge_expired(self._clock())
        except StoreUnavailable as exc:
            logger.error("Session cleanup error", extra={"json_fields": {"error": str(exc)}})
            return 0
        if removed:
            logger.info("Expired sessions purged", extra={"json_fields": {"deleted_records": removed}})
        return removed

    @staticmethod
    def _check_reason(reason: str) -> str:
        if reason not in LOGOUT_REASONS:
            raise ValueError(f"Unknown logout reason: {reason}")
        return reason

    @staticmethod
    def _resolve_ttl(ttl_seconds: Optional[int], default_seconds: int) -> int:
        if ttl_seconds is None:
            return default_seconds
        if ttl_seconds <= 0:
            logger.warning("Received non-positive TTL override (%s); using default %s", ttl_seconds, default_seconds)
            return default_seconds
        return ttl_seconds


__all__ = [
    "InMemorySessionAdapter",
    "LOGOUT_REASONS",
    "SessionRecord",
    "SessionStorageAdapter",
    "SessionStore",
    "SqlSessionAdapter",
]
