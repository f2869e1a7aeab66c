"""Create the gateway tables and seed a user, an admin and an active session.

Intended for local testing together with ``make_jwt.py``:

    python gateway/scripts/seed_identities.py --user-id user-1 --email user@example.com
    python gateway/scripts/make_jwt.py --id user-1 --email user@example.com
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from sqlalchemy import select

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from gateway.app import config
from gateway.app.security.session_store import SessionStore, SqlSessionAdapter
from gateway.app.storage.database import close_db_service, init_db_service
from gateway.app.storage.models import AdminRow, UserRow


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed identities and a session for local testing")
    p.add_argument("--database-url", default=config.DATABASE_URL)
    p.add_argument("--user-id", default="user-1")
    p.add_argument("--email", default="user@example.com")
    p.add_argument("--name", default="Local User")
    p.add_argument("--admin-id", default="admin-1")
    p.add_argument("--admin-email", default="admin@example.com")
    p.add_argument("--session-id", default=None, help="Session id to create (random when omitted)")
    return p.parse_args()


async def _seed(args: argparse.Namespace) -> str:
    database = await init_db_service(args.database_url)
    try:
        async with database.session() as session:
            for model, identity_id, email, name in (
                (UserRow, args.user_id, args.email, args.name),
                (AdminRow, args.admin_id, args.admin_email, "Local Admin"),
            ):
                existing = (await session.execute(select(model).where(model.id == identity_id))).scalar_one_or_none()
                if existing is None:
                    session.add(model(id=identity_id, email=email, name=name, is_active=True))
                else:
                    existing.email = email
                    existing.is_active = True

        store = SessionStore(adapter=SqlSessionAdapter(database))
        record = await store.create_session(
            user_id=args.user_id,
            session_id=args.session_id,
            user_agent="seed-script",
        )
        return record.session_id
    finally:
        await close_db_service()


def main() -> int:
    args = _parse_args()
    session_id = asyncio.run(_seed(args))
    print(f"user={args.user_id} admin={args.admin_id} session={session_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
