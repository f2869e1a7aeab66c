from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

from fastapi import Depends, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from gateway.app import config
from gateway.app.auth.errors import RateLimited
from gateway.app.dependencies import DependencyNotReady, get_audit_sink, get_rate_limiter
from gateway.app.ratelimit import Axis, Decision, RateLimitConfig, RateLimiter, Target, build_targets
from gateway.app.security.fingerprint import DeviceInfo, fingerprint_request
from gateway.app.security.user_agent import describe_user_agent

logger = logging.getLogger("auth.rate_limiting")

_MINUTE = 60

RATE_LIMIT_PRESETS: dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(
        scope="auth",
        window_seconds=15 * _MINUTE,
        max_requests=5,
        max_per_device=3,
        message="Too many authentication attempts. Please try again later.",
    ),
    "login": RateLimitConfig(
        scope="login",
        window_seconds=15 * _MINUTE,
        max_requests=3,
        max_per_device=2,
        skip_successful=True,
        message="Too many login attempts. Account temporarily locked.",
    ),
    "password_reset": RateLimitConfig(
        scope="password_reset",
        window_seconds=60 * _MINUTE,
        max_requests=3,
        max_per_device=2,
        message="Too many password reset attempts. Please try again later.",
    ),
    "otp": RateLimitConfig(
        scope="otp",
        window_seconds=15 * _MINUTE,
        max_requests=5,
        max_per_device=3,
        message="Too many OTP requests. Please try again later.",
    ),
    "register": RateLimitConfig(
        scope="register",
        window_seconds=60 * _MINUTE,
        max_requests=5,
        max_per_device=3,
        message="Too many registration attempts. Please try again later.",
    ),
    "api": RateLimitConfig(
        scope="api",
        window_seconds=15 * _MINUTE,
        max_requests=config.RATE_LIMIT_API_MAX_REQUESTS,
        max_per_device=config.RATE_LIMIT_API_MAX_PER_DEVICE,
        max_per_user=config.RATE_LIMIT_API_MAX_PER_USER,
        message="API rate limit exceeded. Please slow down.",
    ),
}


@dataclass
class PendingIncrement:
    config: RateLimitConfig
    targets: list[Target] = field(default_factory=list)


def _pending(request: Request) -> list[PendingIncrement]:
    pending = getattr(request.state, "rate_limit_pending", None)
    if pending is None:
        pending = []
        request.state.rate_limit_pending = pending
    return pending


def request_device(request: Request) -> DeviceInfo:
    device = getattr(request.state, "device", None)
    if device is None:
        device = fingerprint_request(request)
        request.state.device = device
    return device


def _resolve_config(scope: Union[str, RateLimitConfig]) -> RateLimitConfig:
    if isinstance(scope, RateLimitConfig):
        return scope
    try:
        return RATE_LIMIT_PRESETS[scope]
    except KeyError:
        raise ValueError(f"Unknown rate limit scope: {scope}") from None


def _rejected(request: Request, config: RateLimitConfig, decision: Decision) -> RateLimited:
    exc = RateLimited(config.message, retry_after=decision.retry_after, endpoint=config.scope)
    device = request_device(request)
    get_audit_sink().emit(
        exc.audit_category,
        client_ip=device.ip,
        metadata={
            "path": request.url.path,
            "method": request.method,
            "endpoint": config.scope,
            "identifier_type": decision.axis.value if decision.axis else None,
            "retryAfter": exc.retry_after,
            "user_agent": device.user_agent or None,
        },
    )
    return exc


def rate_limit(scope: Union[str, RateLimitConfig]):
    """Build a dependency that pre-checks ``scope`` and queues the increment.

    The ``user`` axis is checked here when an identity is already on the
    request; otherwise the token verifier adds it once the caller is known.
    """

    limit_config = _resolve_config(scope)

    async def dependency(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> None:
        device = request_device(request)
        auth = getattr(request.state, "auth", None)
        targets = build_targets(
            limit_config,
            ip=device.ip,
            fingerprint=device.fingerprint,
            user_key=auth.rate_limit_key if auth is not None else None,
        )
        decision = await limiter.admit(targets, limit_config)
        if not decision.allowed:
            logger.warning(
                "Request rejected by rate limiter",
                extra={
                    "json_fields": {
                        "scope": limit_config.scope,
                        "identifier_type": decision.axis.value if decision.axis else None,
                        "retry_after": decision.retry_after,
                    }
                },
            )
            _pending(request).clear()
            raise _rejected(request, limit_config, decision)
        _pending(request).append(PendingIncrement(limit_config, targets))

    return dependency


async def admit_user_axis(request: Request, user_key: str) -> None:
    """Check the ``user`` axis for scopes admitted before the caller was known."""

    pending = getattr(request.state, "rate_limit_pending", None)
    if not pending:
        return
    limiter = get_rate_limiter()
    for entry in pending:
        if not entry.config.max_per_user:
            continue
        if any(target.axis is Axis.USER for target in entry.targets):
            continue
        target = Target(Axis.USER, user_key)
        decision = await limiter.admit([target], entry.config)
        if not decision.allowed:
            # Rejected requests are never counted on any axis.
            pending.clear()
            raise _rejected(request, entry.config, decision)
        entry.targets.append(target)


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Fingerprint every request up front and settle rate-limit counters afterwards."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        device = fingerprint_request(request)
        request.state.device = device
        request.state.device_label = describe_user_agent(device.user_agent)
        request.state.rate_limit_pending = []

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            pending: list[PendingIncrement] = request.state.rate_limit_pending
            if pending:
                await self._settle(pending, status_code)
        return response

    @staticmethod
    async def _settle(pending: list[PendingIncrement], status_code: int) -> None:
        try:
            limiter = get_rate_limiter()
        except DependencyNotReady:
            return
        for entry in pending:
            await limiter.increment(entry.targets, entry.config, status_code)


__all__ = [
    "AdmissionMiddleware",
    "PendingIncrement",
    "RATE_LIMIT_PRESETS",
    "admit_user_axis",
    "rate_limit",
    "request_device",
]
