"""Identity lookup and caching."""

from .cache import IdentityCache
from .store import IdentityStore, InMemoryIdentityStore, SqlIdentityStore

__all__ = ["IdentityCache", "IdentityStore", "InMemoryIdentityStore", "SqlIdentityStore"]
