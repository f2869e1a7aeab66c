"""Multi-axis windowed admission control on top of a ``CounterStore``."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from gateway.app.auth.errors import StoreUnavailable
from gateway.app.utils.audit import AuditSink
from gateway.app.utils.observability import record_rate_limit_rejection, record_rate_limit_store_error

from .store import Axis, CounterKey, CounterStore

logger = logging.getLogger("ratelimit.engine")

UNKNOWN_DEVICE = "unknown"
BLOCK_REASON = "Rate limit exceeded"


@dataclass(frozen=True)
class RateLimitConfig:
    scope: str
    window_seconds: float
    max_requests: int
    max_per_device: Optional[int] = None
    max_per_user: Optional[int] = None
    block_seconds: float = 60 * 60
    skip_successful: bool = False
    skip_failed: bool = False
    message: str = "Too many requests. Please try again later."

    def limit_for(self, axis: Axis) -> Optional[int]:
        if axis is Axis.IP:
            return self.max_requests
        if axis is Axis.DEVICE:
            return self.max_per_device
        return self.max_per_user

    def counts(self, status_code: int) -> bool:
        if self.skip_successful and status_code < 400:
            return False
        if self.skip_failed and status_code >= 400:
            return False
        return True


@dataclass(frozen=True)
class Target:
    axis: Axis
    identifier: str


@dataclass(frozen=True)
class Decision:
    allowed: bool
    axis: Optional[Axis] = None
    identifier: Optional[str] = None
    retry_after: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)


def build_targets(
    config: RateLimitConfig,
    *,
    ip: str,
    fingerprint: Optional[str] = None,
    user_key: Optional[str] = None,
) -> list[Target]:
    """Axes that apply to a request, in check order (ip, device, user)."""

    targets = [Target(Axis.IP, ip)]
    if fingerprint and fingerprint != UNKNOWN_DEVICE and config.max_per_device:
        targets.append(Target(Axis.DEVICE, fingerprint))
    if user_key and config.max_per_user:
        targets.append(Target(Axis.USER, user_key))
    return targets


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        *,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    async def check(self, identifier: str, axis: Axis, config: RateLimitConfig) -> Decision:
        limit = config.limit_for(axis)
        if limit is None:
            return Decision.allow()

        key = CounterKey(identifier, axis, config.scope)
        now = self._clock()
        try:
            row = await self._store.get_live(key, now=now)
            if row is not None and row.is_blocked:
                return Decision(False, axis, identifier, row.window_end - now, row.block_reason or BLOCK_REASON)

            count = row.request_count if row is not None else 0
            if count < limit:
                return Decision.allow()

            until = now + config.block_seconds
            await self._store.block(key, now=now, until=until, reason=BLOCK_REASON)
        except StoreUnavailable as exc:
            record_rate_limit_store_error("check")
            logger.error(
                "Rate limit check failed; admitting request",
                extra={
                    "json_fields": {
                        "category": "rate_limiter_error",
                        "scope": config.scope,
                        "identifier_type": axis.value,
                        "error": str(exc),
                    }
                },
            )
            return Decision.allow()

        if self._audit is not None:
            self._audit.emit(
                "rate_limit_exceeded",
                client_ip=identifier if axis is Axis.IP else None,
                metadata={
                    "identifier": identifier,
                    "identifier_type": axis.value,
                    "endpoint": config.scope,
                    "request_count": count,
                    "max_requests": limit,
                },
            )
        return Decision(False, axis, identifier, config.block_seconds, "Too many requests")

    async def admit(self, targets: Sequence[Target], config: RateLimitConfig) -> Decision:
        """Check each axis in order; the first rejection wins."""

        for target in targets:
            decision = await self.check(target.identifier, target.axis, config)
            if not decision.allowed:
                record_rate_limit_rejection(config.scope, target.axis.value)
                return decision
        return Decision.allow()

    async def increment(self, targets: Iterable[Target], config: RateLimitConfig, status_code: int) -> None:
        if not config.counts(status_code):
            return
        now = self._clock()
        for target in targets:
            key = CounterKey(target.identifier, target.axis, config.scope)
            try:
                await self._store.increment(key, now=now, window_seconds=config.window_seconds)
            except StoreUnavailable as exc:
                record_rate_limit_store_error("increment")
                logger.warning(
                    "Rate limit increment dropped",
                    extra={
                        "json_fields": {
                            "category": "rate_limiter_error",
                            "scope": config.scope,
                            "identifier_type": target.axis.value,
                            "error": str(exc),
                        }
                    },
                )

    async def cleanup(self) -> int:
        try:
            removed = await self._store.purge_expired(now=self._clock())
        except StoreUnavailable as exc:
            record_rate_limit_store_error("cleanup")
            logger.error(
                "Rate limit cleanup error",
                extra={"json_fields": {"category": "rate_limiter_error", "error": str(exc)}},
            )
            return 0
        if removed:
            logger.info(
                "Rate limit cleanup completed",
                extra={"json_fields": {"category": "rate_limiter_cleanup", "deleted_records": removed}},
            )
        return removed

    async def close(self) -> None:
        await self._store.close()


class RateLimitSweeper:
    """Runs cleanup jobs once at start and then on a fixed interval."""

    def __init__(self, jobs: Sequence[Callable[[], Awaitable[int]]], *, interval_seconds: float) -> None:
        self._jobs = list(jobs)
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        removed = 0
        for job in self._jobs:
            try:
                removed += await job()
            except Exception:
                # A failing job must not stop the remaining jobs or later sweeps.
                logger.exception(
                    "Cleanup job failed",
                    extra={"json_fields": {"category": "rate_limiter_error", "job": getattr(job, "__qualname__", repr(job))}},
                )
        return removed

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="rate-limit-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


__all__ = [
    "BLOCK_REASON",
    "Decision",
    "RateLimitConfig",
    "RateLimitSweeper",
    "RateLimiter",
    "Target",
    "UNKNOWN_DEVICE",
    "build_targets",
]
