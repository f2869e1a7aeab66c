"""Client-side helpers for talking to the gateway."""

from .api_client import PUBLIC_ROUTES, CredentialStore, GatewayClient, is_public_route
from .refresh import ReauthenticationRequired, RefreshCoordinator, RefreshFailed

__all__ = [
    "CredentialStore",
    "GatewayClient",
    "PUBLIC_ROUTES",
    "ReauthenticationRequired",
    "RefreshCoordinator",
    "RefreshFailed",
    "is_public_route",
]
