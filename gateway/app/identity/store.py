"""Lookup of users and admins by ``(id, email)``."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from gateway.app.auth.errors import StoreUnavailable
from gateway.app.auth.schemas import Identity
from gateway.app.storage.database import DatabaseService
from gateway.app.storage.models import AdminRow, UserRow


class IdentityStore(Protocol):
    async def get_user(self, user_id: str, email: str) -> Optional[Identity]: ...

    async def get_admin(self, admin_id: str, email: str) -> Optional[Identity]: ...


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._users: Dict[Tuple[str, str], Identity] = {}
        self._admins: Dict[Tuple[str, str], Identity] = {}
        self._lock = asyncio.Lock()
        self.user_lookups = 0

    async def add_user(self, user_id: str, email: str, name: Optional[str] = None) -> Identity:
        identity = Identity(id=str(user_id), email=email, name=name, role="user")
        async with self._lock:
            self._users[(identity.id, email)] = identity
        return identity

    async def add_admin(self, admin_id: str, email: str, name: Optional[str] = None) -> Identity:
        identity = Identity(id=str(admin_id), email=email, name=name, role="admin")
        async with self._lock:
            self._admins[(identity.id, email)] = identity
        return identity

    async def remove_user(self, user_id: str, email: str) -> None:
        async with self._lock:
            self._users.pop((str(user_id), email), None)

    async def get_user(self, user_id: str, email: str) -> Optional[Identity]:
        async with self._lock:
            self.user_lookups += 1
            return self._users.get((str(user_id), email))

    async def get_admin(self, admin_id: str, email: str) -> Optional[Identity]:
        async with self._lock:
            return self._admins.get((str(admin_id), email))


class SqlIdentityStore:
    def __init__(self, database: DatabaseService) -> None:
        self._db = database

    async def _lookup(self, model, identity_id: str, email: str, role: str) -> Optional[Identity]:
        query = select(model).where(
            model.id == str(identity_id),
            model.email == email,
            model.is_active.is_(True),
        )
        try:
            async with self._db.session() as session:
                row = (await session.execute(query)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"{role} lookup failed: {exc}") from exc
        if row is None:
            return None
        return Identity(id=row.id, email=row.email, name=row.name, role=role)

    async def get_user(self, user_id: str, email: str) -> Optional[Identity]:
        return await self._lookup(UserRow, user_id, email, "user")

    async def get_admin(self, admin_id: str, email: str) -> Optional[Identity]:
        return await self._lookup(AdminRow, admin_id, email, "admin")


__all__ = ["IdentityStore", "InMemoryIdentityStore", "SqlIdentityStore"]
