from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

Role = Literal["user", "admin"]


class Identity(BaseModel):
    """A resolved caller as stored in the identity cache."""

    id: str
    email: str
    name: Optional[str] = None
    role: Role = "user"


class AuthContext(BaseModel):
    """Represents the authenticated principal attached to ``request.state.auth``."""

    identity: Identity
    session_id: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    from_cache: bool = False
    claims: Dict[str, Any]

    @property
    def subject(self) -> str:
        return self.identity.id

    @property
    def role(self) -> str:
        return self.identity.role

    @property
    def is_admin(self) -> bool:
        return self.identity.role == "admin"

    @property
    def rate_limit_key(self) -> str:
        """Identifier used on the ``user`` rate-limit axis."""
        return self.session_id or self.identity.id
