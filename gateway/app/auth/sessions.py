from __future__ import annotations

import logging

from fastapi import Request

from gateway.app import config
from gateway.app.auth.errors import SessionInvalid, SessionMissing, StoreUnavailable
from gateway.app.auth.schemas import Identity
from gateway.app.security.session_store import SessionStore

logger = logging.getLogger("auth.sessions")


async def validate_session(request: Request, identity: Identity, store: SessionStore) -> str:
    """Confirm the claimed session is active, unexpired and owned by ``identity``.

    Returns the session id and stores it on ``request.state.session_id``.
    Store failures propagate as ``StoreUnavailable``; refreshing
    ``last_activity`` is best effort.
    """

    session_id = request.headers.get(config.SESSION_HEADER, "").strip()
    if not session_id:
        raise SessionMissing()

    record = await store.find_active(session_id, identity.id)
    if record is None:
        raise SessionInvalid()

    try:
        await store.touch(session_id)
    except StoreUnavailable as exc:
        logger.warning(
            "Session activity update failed",
            extra={"json_fields": {"session_id": session_id, "error": str(exc)}},
        )

    request.state.session_id = session_id
    return session_id


__all__ = ["validate_session"]
