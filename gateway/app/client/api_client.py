from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from gateway.app import config

from .refresh import ReauthenticationRequired, RefreshCoordinator, RefreshFailed

logger = logging.getLogger("client.api")

# Credentials are never attached to these and a 401 from them is returned as-is.
PUBLIC_ROUTES = frozenset(
    {
        "/auth/login",
        "/auth/register",
        "/auth/forgot-password",
        "/auth/reset-password",
        "/auth/verify-otp",
        "/auth/resend-otp",
        "/auth/refresh",
    }
)

SESSION_ERRORS = frozenset({"Session ID required", "Session invalid or revoked", "Session not found"})


def is_public_route(path: str) -> bool:
    normalized = httpx.URL(path).path.rstrip("/")
    return any(normalized.endswith(route) for route in PUBLIC_ROUTES)


class CredentialStore:
    """In-memory holder for the tokens and session id of one signed-in user."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.session_id = session_id

    def update(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        if access_token is not None:
            self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token
        if session_id is not None:
            self.session_id = session_id

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.session_id = None

    @property
    def is_empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None and self.session_id is None


def _error_of(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


class GatewayClient:
    """Async API client that renews access tokens transparently on 401."""

    def __init__(
        self,
        base_url: str,
        *,
        credentials: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        refresh_path: str = "/auth/refresh",
    ) -> None:
        self.credentials = credentials or CredentialStore()
        self._refresh_path = refresh_path
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._coordinator: RefreshCoordinator[dict[str, Any]] = RefreshCoordinator(
            self._renew,
            on_success=self._store_renewed,
            on_failure=self.credentials.clear,
        )

    @property
    def coordinator(self) -> RefreshCoordinator[dict[str, Any]]:
        return self._coordinator

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.credentials.access_token:
            headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        if self.credentials.session_id:
            headers[config.SESSION_HEADER] = self.credentials.session_id
        return headers

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._send(method, path, retried=False, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def _send(self, method: str, path: str, *, retried: bool, **kwargs: Any) -> httpx.Response:
        public = is_public_route(path)
        headers = dict(kwargs.pop("headers", None) or {})
        sent_headers = dict(headers)
        sent_token = self.credentials.access_token
        if not public:
            sent_headers.update(self._auth_headers())

        response = await self._http.request(method, path, headers=sent_headers, **kwargs)
        if response.status_code != 401 or public:
            return response

        error = _error_of(response)
        if error in SESSION_ERRORS:
            self.credentials.clear()
            raise ReauthenticationRequired(error)
        if retried:
            raise ReauthenticationRequired(f"{method} {path} rejected again after token refresh")

        current = self.credentials.access_token
        if current is None or current == sent_token or self._coordinator.refreshing:
            await self._coordinator.refresh()
        # Otherwise the token was already renewed while this request was in flight.
        return await self._send(method, path, retried=True, headers=headers, **kwargs)

    async def _renew(self) -> dict[str, Any]:
        refresh_token = self.credentials.refresh_token
        if not refresh_token:
            raise RefreshFailed("No refresh token available")

        response = await self._http.post(self._refresh_path, json={"refreshToken": refresh_token})
        if response.status_code != 200:
            raise RefreshFailed(f"Token refresh rejected with status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RefreshFailed("Token refresh returned an invalid body") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("accessToken"), str):
            raise RefreshFailed("Token refresh response missing accessToken")
        return payload

    def _store_renewed(self, payload: dict[str, Any]) -> None:
        rotated = payload.get("refreshToken")
        self.credentials.update(
            access_token=payload["accessToken"],
            refresh_token=rotated if isinstance(rotated, str) and rotated else None,
        )
        logger.info("Access token renewed")


__all__ = [
    "CredentialStore",
    "GatewayClient",
    "PUBLIC_ROUTES",
    "SESSION_ERRORS",
    "is_public_route",
]
