"""Run one cleanup sweep over expired rate-limit rows and sessions."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from gateway.app import config
from gateway.app.ratelimit import RateLimiter, RedisCounterStore, SqlCounterStore
from gateway.app.security.session_store import SessionStore, SqlSessionAdapter
from gateway.app.storage.database import close_db_service, init_db_service
from gateway.app.utils.observability import configure_logging


async def _purge() -> tuple[int, int]:
    database = await init_db_service(config.DATABASE_URL)
    try:
        if config.RATE_LIMIT_BACKEND == "redis":
            store = RedisCounterStore(config.RATE_LIMIT_REDIS_URL or config.CACHE_REDIS_URL or "")
        else:
            store = SqlCounterStore(database)
        limiter = RateLimiter(store)
        try:
            counters = await limiter.cleanup()
        finally:
            await store.close()
        sessions = await SessionStore(adapter=SqlSessionAdapter(database)).purge_expired()
        return counters, sessions
    finally:
        await close_db_service()


def main() -> int:
    configure_logging()
    if config.RATE_LIMIT_BACKEND == "memory":
        print("RATE_LIMIT_BACKEND=memory keeps counters in-process; nothing to purge")
        return 0
    counters, sessions = asyncio.run(_purge())
    print(f"deleted rate_limits={counters} sessions={sessions}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
