from __future__ import annotations

from fastapi import APIRouter, Depends

from gateway.app.auth.dependencies import AuthContext, require_admin_user
from gateway.app.auth.rate_limiting import rate_limit
from gateway.app.dependencies import get_identity_cache, get_session_store
from gateway.app.identity import IdentityCache
from gateway.app.security.session_store import SessionStore

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(rate_limit("api"))])


@router.get("/status")
async def admin_status(auth: AuthContext = Depends(require_admin_user)) -> dict[str, str]:
    """Simple admin health endpoint protected by role-based access control."""

    return {"status": "ok", "subject": auth.subject, "role": auth.role}


@router.post("/users/{user_id}/revoke-sessions")
async def revoke_user_sessions(
    user_id: str,
    _: AuthContext = Depends(require_admin_user),
    sessions: SessionStore = Depends(get_session_store),
    cache: IdentityCache = Depends(get_identity_cache),
) -> dict[str, int]:
    """Force every active session of ``user_id`` to log in again."""

    revoked = await sessions.revoke_all_for_user(user_id, reason="admin")
    await cache.invalidate(user_id)
    return {"revoked": revoked}
