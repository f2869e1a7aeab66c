"""Typed admission failures and their HTTP rendering."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def epoch_to_iso(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class GatewayError(Exception):
    """Base class for every failure the admission chain can produce.

    Subclasses pin the status code, the public ``error`` string and the audit
    category. Extra body fields (``expired_at``, ``retryAfter`` ...) are passed
    through ``fields`` and rendered verbatim.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal server error"
    default_message: Optional[str] = None
    audit_category: str = "gateway_error"

    def __init__(self, message: Optional[str] = None, **fields: Any) -> None:
        self.message = message if message is not None else self.default_message
        self.fields = fields
        super().__init__(self.message or self.error)

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error}
        if self.message:
            payload["message"] = self.message
        payload.update(self.fields)
        payload["timestamp"] = utc_timestamp()
        return payload

    def headers(self) -> dict[str, str]:
        if self.status_code == status.HTTP_401_UNAUTHORIZED:
            return {"WWW-Authenticate": "Bearer"}
        return {}


class AuthHeaderMissing(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Authorization header missing or malformed"
    default_message = "Please provide a valid Bearer token"
    audit_category = "missing_auth_header"


class TokenMalformed(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Invalid token"
    audit_category = "invalid_jwt_token"


class TokenInvalidSignature(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Invalid token"
    audit_category = "invalid_jwt_signature"


class TokenNotYetValid(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Token not yet valid"
    audit_category = "premature_jwt_token"


class TokenExpired(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Token expired"
    audit_category = "auth_token_expired"


class PayloadMalformed(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Invalid token structure"
    audit_category = "malformed_jwt_payload"


class AdminNotFound(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Admin not found or disabled"
    audit_category = "token_admin_not_found"


class UserNotFound(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "User not found or disabled"
    audit_category = "token_user_not_found"


class AdminRequired(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Admin access required"
    default_message = "You do not have permission to access this resource"
    audit_category = "unauthorized_admin_access"


class SessionMissing(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Session ID required"
    default_message = "Please include x-session-id header"
    audit_category = "missing_session_id"


class SessionInvalid(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Session invalid or revoked"
    default_message = "Please login again"
    audit_category = "invalid_or_revoked_session"


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "Too Many Requests"
    default_message = "Too many requests. Please try again later."
    audit_category = "rate_limit_blocked_request"

    def __init__(self, message: Optional[str] = None, *, retry_after: float, endpoint: str) -> None:
        self.retry_after = max(1, math.ceil(retry_after))
        super().__init__(message, retryAfter=self.retry_after, blocked=True, endpoint=endpoint)

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class StoreUnavailable(GatewayError):
    """A backing store could not be reached or returned a driver error."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Authentication service error"
    audit_category = "auth_service_error"

    def body(self) -> dict[str, Any]:
        # Driver details stay in the logs.
        return {"error": self.error, "timestamp": utc_timestamp()}


def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers())


__all__ = [
    "AdminNotFound",
    "AdminRequired",
    "AuthHeaderMissing",
    "GatewayError",
    "PayloadMalformed",
    "RateLimited",
    "SessionInvalid",
    "SessionMissing",
    "StoreUnavailable",
    "TokenExpired",
    "TokenInvalidSignature",
    "TokenMalformed",
    "TokenNotYetValid",
    "UserNotFound",
    "epoch_to_iso",
    "gateway_error_handler",
    "utc_timestamp",
]
