"""Shared collaborators for the admission chain.

Stores are created lazily on startup so that importing the application never
requires a reachable database or Redis. Tests inject in-memory
implementations through ``configure_dependencies`` before the app starts.
"""
import logging
from typing import Optional

from gateway.app import config
from gateway.app.cache import BaseCacheAdapter, InMemoryCacheAdapter, RedisCacheAdapter
from gateway.app.identity import IdentityCache, IdentityStore, SqlIdentityStore
from gateway.app.ratelimit import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitSweeper,
    RedisCounterStore,
    SqlCounterStore,
)
from gateway.app.security.session_store import SessionStore, SqlSessionAdapter
from gateway.app.storage.database import DatabaseService, close_db_service, init_db_service
from gateway.app.utils.audit import AuditSink, LoggingAuditSink

_audit_sink: Optional[AuditSink] = None
_identity_store: Optional[IdentityStore] = None
_identity_cache: Optional[IdentityCache] = None
_session_store: Optional[SessionStore] = None
_rate_limiter: Optional[RateLimiter] = None
_sweeper: Optional[RateLimitSweeper] = None
_database: Optional[DatabaseService] = None

logger = logging.getLogger("dependencies")


class DependencyNotReady(RuntimeError):
    """Raised when a collaborator is requested before startup configured it."""


def get_audit_sink() -> AuditSink:
    global _audit_sink
    if _audit_sink is None:
        _audit_sink = LoggingAuditSink()
    return _audit_sink


def _build_cache_adapter() -> BaseCacheAdapter:
    redis_url = config.CACHE_REDIS_URL
    if redis_url:
        logger.info("Initializing Redis identity cache adapter")
        return RedisCacheAdapter(url=redis_url, namespace=config.CACHE_NAMESPACE)
    logger.info("Falling back to in-memory identity cache adapter")
    return InMemoryCacheAdapter()


def get_identity_cache() -> IdentityCache:
    global _identity_cache
    if _identity_cache is None:
        _identity_cache = IdentityCache(_build_cache_adapter())
    return _identity_cache


def get_identity_store() -> IdentityStore:
    if _identity_store is None:
        raise DependencyNotReady("Identity store not initialized")
    return _identity_store


def get_session_store() -> SessionStore:
    if _session_store is None:
        raise DependencyNotReady("Session store not initialized")
    return _session_store


def get_rate_limiter() -> RateLimiter:
    if _rate_limiter is None:
        raise DependencyNotReady("Rate limiter not initialized")
    return _rate_limiter


def _build_counter_store(database: Optional[DatabaseService]) -> CounterStore:
    backend = config.RATE_LIMIT_BACKEND
    if backend == "redis":
        redis_url = config.RATE_LIMIT_REDIS_URL or config.CACHE_REDIS_URL
        if not redis_url:
            raise RuntimeError("RATE_LIMIT_BACKEND=redis requires RATE_LIMIT_REDIS_URL")
        logger.info("Initializing Redis rate limit store")
        return RedisCounterStore(redis_url)
    if backend == "memory":
        logger.warning("Using in-memory rate limit store; counters are per-process and lost on restart")
        return InMemoryCounterStore()
    if database is None:
        raise RuntimeError("SQL rate limit store requires a database")
    logger.info("Initializing SQL rate limit store")
    return SqlCounterStore(database)


def configure_dependencies(
    *,
    audit_sink: Optional[AuditSink] = None,
    identity_store: Optional[IdentityStore] = None,
    identity_cache: Optional[IdentityCache] = None,
    session_store: Optional[SessionStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> None:
    global _audit_sink, _identity_store, _identity_cache, _session_store, _rate_limiter
    if audit_sink is not None:
        _audit_sink = audit_sink
    if identity_store is not None:
        _identity_store = identity_store
    if identity_cache is not None:
        _identity_cache = identity_cache
    if session_store is not None:
        _session_store = session_store
    if rate_limiter is not None:
        _rate_limiter = rate_limiter


def reset_dependencies() -> None:
    global _audit_sink, _identity_store, _identity_cache, _session_store, _rate_limiter, _sweeper
    _audit_sink = None
    _identity_store = None
    _identity_cache = None
    _session_store = None
    _rate_limiter = None
    _sweeper = None


def _needs_database() -> bool:
    return (
        _identity_store is None
        or _session_store is None
        or (_rate_limiter is None and config.RATE_LIMIT_BACKEND == "sql")
    )


async def initialize_on_startup() -> None:
    """Build whatever was not injected and start the cleanup sweeper."""

    global _database, _identity_store, _session_store, _rate_limiter, _sweeper

    audit = get_audit_sink()
    if isinstance(audit, LoggingAuditSink):
        audit.start()

    if _needs_database():
        _database = await init_db_service(config.DATABASE_URL, echo=config.DATABASE_ECHO)
    if _identity_store is None:
        _identity_store = SqlIdentityStore(_database)
    if _session_store is None:
        _session_store = SessionStore(adapter=SqlSessionAdapter(_database))
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(_build_counter_store(_database), audit=audit)

    get_identity_cache()

    _sweeper = RateLimitSweeper(
        [_rate_limiter.cleanup, _session_store.purge_expired],
        interval_seconds=config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
    )
    _sweeper.start()


async def shutdown_dependencies() -> None:
    global _database, _sweeper, _rate_limiter, _identity_cache
    if _sweeper is not None:
        await _sweeper.stop()
        _sweeper = None
    if _rate_limiter is not None:
        await _rate_limiter.close()
        _rate_limiter = None
    if _identity_cache is not None:
        await _identity_cache.close()
        _identity_cache = None
    if isinstance(_audit_sink, LoggingAuditSink):
        _audit_sink.stop()
    if _database is not None:
        await close_db_service()
        _database = None
