from __future__ import annotations

import time
from typing import Any, Optional

import jwt  # type: ignore[import]
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import (  # type: ignore[import]
    DecodeError,
    ImmatureSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from gateway.app import config
from gateway.app.auth.errors import (
    AdminNotFound,
    AdminRequired,
    AuthHeaderMissing,
    GatewayError,
    PayloadMalformed,
    RateLimited,
    StoreUnavailable,
    TokenExpired,
    TokenInvalidSignature,
    TokenMalformed,
    TokenNotYetValid,
    UserNotFound,
    epoch_to_iso,
)
from gateway.app.auth.rate_limiting import admit_user_axis, request_device
from gateway.app.auth.schemas import AuthContext, Identity
from gateway.app.auth.sessions import validate_session
from gateway.app.dependencies import (
    get_audit_sink,
    get_identity_cache,
    get_identity_store,
    get_session_store,
)
from gateway.app.identity import IdentityCache, IdentityStore
from gateway.app.security.session_store import SessionStore
from gateway.app.utils.audit import AuditSink
from gateway.app.utils.observability import record_auth_failure

_bearer_scheme = HTTPBearer(auto_error=False)


def _get_app_secret() -> str:
    if not config.APP_JWT_SECRET:
        raise StoreUnavailable("APP_JWT_SECRET environment variable is not configured")
    return config.APP_JWT_SECRET


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _decode_token(token: str, *, now: Optional[float] = None) -> dict[str, Any]:
    """Verify the signature and return the claims.

    Expiry is checked after the signature so that only authentic tokens are
    reported as expired, with the original expiry in the response.
    """

    options = {"verify_exp": False, "verify_aud": bool(config.APP_JWT_AUDIENCE)}
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _get_app_secret(),
            algorithms=[config.APP_JWT_ALGORITHM],
            audience=config.APP_JWT_AUDIENCE,
            issuer=config.APP_JWT_ISSUER,
            options=options,
        )
    except InvalidSignatureError as exc:
        raise TokenInvalidSignature() from exc
    except ImmatureSignatureError as exc:
        raise TokenNotYetValid() from exc
    except (InvalidAudienceError, InvalidIssuerError) as exc:
        raise TokenMalformed(str(exc)) from exc
    except DecodeError as exc:
        raise TokenMalformed() from exc
    except InvalidTokenError as exc:
        raise TokenMalformed() from exc

    expires_at = _as_int(payload.get("exp"))
    current = time.time() if now is None else now
    if expires_at is not None and expires_at <= current:
        raise TokenExpired(expired_at=epoch_to_iso(expires_at))
    return payload


def _claimed_subject(payload: dict[str, Any]) -> tuple[str, str]:
    subject = payload.get("id", payload.get("sub"))
    email = payload.get("email")
    if subject is None or isinstance(subject, bool) or not str(subject).strip():
        raise PayloadMalformed()
    if not isinstance(email, str) or not email:
        raise PayloadMalformed()
    return str(subject), email


async def resolve_identity(
    payload: dict[str, Any],
    store: IdentityStore,
    cache: IdentityCache,
) -> tuple[Identity, bool]:
    """Resolve the token's caller; returns the identity and whether it came from the cache."""

    subject, email = _claimed_subject(payload)

    if payload.get("role") == "admin":
        admin = await store.get_admin(subject, email)
        if admin is None:
            raise AdminNotFound()
        return admin, False

    cached = await cache.get(subject)
    if cached is not None and cached.email == email and cached.role == "user":
        return cached, True

    user = await store.get_user(subject, email)
    if user is None:
        raise UserNotFound()
    await cache.set(user)
    return user, False


def _audit_failure(request: Request, audit: AuditSink, exc: GatewayError, actor_id: Optional[str]) -> None:
    record_auth_failure(exc.audit_category)
    device = request_device(request)
    audit.emit(
        exc.audit_category,
        actor_id=actor_id,
        client_ip=device.ip,
        metadata={
            "path": request.url.path,
            "method": request.method,
            "error": exc.error,
            "user_agent": device.user_agent or None,
        },
    )


async def _authenticate(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
    *,
    store: IdentityStore,
    cache: IdentityCache,
    sessions: SessionStore,
    audit: AuditSink,
) -> AuthContext:
    actor_id: Optional[str] = None
    try:
        if credentials is None or not credentials.credentials:
            raise AuthHeaderMissing()

        payload = _decode_token(credentials.credentials)
        identity, from_cache = await resolve_identity(payload, store, cache)
        actor_id = identity.id

        session_id: Optional[str] = None
        if identity.role != "admin" or config.ENFORCE_ADMIN_SESSIONS:
            session_id = await validate_session(request, identity, sessions)
    except GatewayError as exc:
        _audit_failure(request, audit, exc, actor_id)
        raise

    context = AuthContext(
        identity=identity,
        session_id=session_id,
        issued_at=_as_int(payload.get("iat")),
        expires_at=_as_int(payload.get("exp")),
        from_cache=from_cache,
        claims=payload,
    )
    request.state.auth = context
    await admit_user_axis(request, context.rate_limit_key)
    return context


async def require_authenticated_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    store: IdentityStore = Depends(get_identity_store),
    cache: IdentityCache = Depends(get_identity_cache),
    sessions: SessionStore = Depends(get_session_store),
    audit: AuditSink = Depends(get_audit_sink),
) -> AuthContext:
    return await _authenticate(request, credentials, store=store, cache=cache, sessions=sessions, audit=audit)


async def require_admin_user(
    request: Request,
    context: AuthContext = Depends(require_authenticated_user),
    audit: AuditSink = Depends(get_audit_sink),
) -> AuthContext:
    if not context.is_admin:
        exc = AdminRequired()
        _audit_failure(request, audit, exc, context.subject)
        raise exc
    return context


async def optional_authenticated_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    store: IdentityStore = Depends(get_identity_store),
    cache: IdentityCache = Depends(get_identity_cache),
    sessions: SessionStore = Depends(get_session_store),
    audit: AuditSink = Depends(get_audit_sink),
) -> Optional[AuthContext]:
    if credentials is None:
        return None

    try:
        return await _authenticate(request, credentials, store=store, cache=cache, sessions=sessions, audit=audit)
    except (StoreUnavailable, RateLimited):
        raise
    except GatewayError:
        return None


__all__ = [
    "AuthContext",
    "optional_authenticated_user",
    "require_admin_user",
    "require_authenticated_user",
    "resolve_identity",
]
