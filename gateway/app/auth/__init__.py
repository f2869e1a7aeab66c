"""Authentication helpers and dependencies for the admission gateway."""

from .schemas import AuthContext, Identity

__all__ = ["AuthContext", "Identity"]
