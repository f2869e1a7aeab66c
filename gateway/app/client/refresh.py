"""Single-flight credential renewal for API clients.

Concurrent callers that hit an expired access token must not each start a
renewal. The first caller runs the renewal; everyone arriving while it is in
flight waits on a queued future. All of them see the same outcome, in
arrival order, once the renewal settles.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("client.refresh")

T = TypeVar("T")


class ReauthenticationRequired(Exception):
    """The stored credentials are no longer usable; the user must sign in again."""


class RefreshFailed(ReauthenticationRequired):
    """Renewal of the access token failed; stored credentials have been cleared."""


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class RefreshCoordinator(Generic[T]):
    def __init__(
        self,
        renew: Callable[[], Awaitable[T]],
        *,
        on_success: Optional[Callable[[T], Any]] = None,
        on_failure: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._renew = renew
        self._on_success = on_success
        self._on_failure = on_failure
        self._refreshing = False
        self._queue: list[asyncio.Future] = []

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    @property
    def waiting(self) -> int:
        return len(self._queue)

    async def refresh(self) -> T:
        if self._refreshing:
            waiter: asyncio.Future = asyncio.get_running_loop().create_future()
            self._queue.append(waiter)
            return await waiter

        self._refreshing = True
        try:
            result = await self._renew()
            if self._on_success is not None:
                await _maybe_await(self._on_success(result))
        except asyncio.CancelledError:
            self._release(failure=RefreshFailed("Token refresh cancelled"))
            raise
        except Exception as exc:
            failure = exc if isinstance(exc, RefreshFailed) else RefreshFailed(str(exc) or type(exc).__name__)
            logger.warning("Token refresh failed: %s", failure)
            try:
                if self._on_failure is not None:
                    await _maybe_await(self._on_failure())
            finally:
                self._release(failure=failure)
            if failure is exc:
                raise
            raise failure from exc

        self._release(result=result)
        return result

    def _release(self, *, result: Any = None, failure: Optional[BaseException] = None) -> None:
        waiters, self._queue = self._queue, []
        self._refreshing = False
        for waiter in waiters:
            if waiter.done():
                continue
            if failure is not None:
                waiter.set_exception(failure)
            else:
                waiter.set_result(result)


__all__ = ["ReauthenticationRequired", "RefreshCoordinator", "RefreshFailed"]
