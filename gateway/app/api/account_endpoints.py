from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status

from gateway.app.auth.dependencies import AuthContext, optional_authenticated_user, require_authenticated_user
from gateway.app.auth.rate_limiting import rate_limit
from gateway.app.dependencies import get_session_store
from gateway.app.security.session_store import SessionStore

router = APIRouter(prefix="/api", tags=["account"], dependencies=[Depends(rate_limit("api"))])


@router.get("/me")
async def read_me(request: Request, auth: AuthContext = Depends(require_authenticated_user)) -> dict[str, Any]:
    """Return the caller as resolved by the admission chain."""

    label = getattr(request.state, "device_label", None)
    device: Optional[dict[str, str]] = None
    if label is not None:
        device = {"browser": label.browser, "os": label.os, "deviceClass": label.device_class}
    return {
        "id": auth.identity.id,
        "email": auth.identity.email,
        "name": auth.identity.name,
        "role": auth.role,
        "sessionId": auth.session_id,
        "device": device,
    }


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    auth: AuthContext = Depends(require_authenticated_user),
    sessions: SessionStore = Depends(get_session_store),
) -> None:
    if auth.session_id:
        await sessions.revoke(auth.session_id, reason="manual")


@router.get("/session")
async def session_status(auth: Optional[AuthContext] = Depends(optional_authenticated_user)) -> dict[str, Any]:
    if auth is None:
        return {"authenticated": False}
    return {"authenticated": True, "role": auth.role, "sessionId": auth.session_id}
