from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from authsession.logging import get_logger

logger = get_logger(__name__)


class RefreshState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefreshFailedError(Exception):
    """The refresh round-trip failed or timed out; the user must log in again."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.timed_out = timed_out


class RefreshCoordinator:
    """Single-flight access token refresh for one client.

    However many requests find the access token expired at once, one refresh
    round-trip runs; the rest wait on it and share its outcome. A failed or
    timed-out refresh rejects every waiter and fires ``on_failure`` once. No
    refresh is retried automatically.

    Must be used from a single event loop.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[str]],
        *,
        timeout: float = 10.0,
        on_failure: Optional[Callable[[RefreshFailedError], Any]] = None,
        token: Optional[str] = None,
    ) -> None:
        self._refresh = refresh
        self.timeout = timeout
        self._on_failure = on_failure
        self._token = token
        self._state = RefreshState.IDLE
        self._waiters: List[asyncio.Future] = []
        self._failure: Optional[RefreshFailedError] = None
        self.refresh_count = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        """Adopt a token obtained outside a refresh, e.g. from a login.

        This starts a new episode; a failed refresh stays failed until then.
        """
        self._token = token
        if self._state != RefreshState.IN_FLIGHT:
            self._state = RefreshState.IDLE
            self._failure = None

    async def await_fresh_token(self, stale_token: Optional[str] = None) -> str:
        """Return an access token newer than ``stale_token``.

        Raises:
            RefreshFailedError: The shared refresh failed or timed out
        """
        if self._state == RefreshState.IN_FLIGHT:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter
        if self._state == RefreshState.FAILED:
            # The refresh token is dead; only a new login can recover
            raise RefreshFailedError(
                self._failure.message if self._failure else "Token refresh failed",
                timed_out=bool(self._failure and self._failure.timed_out),
            )
        if stale_token is not None and self._token is not None and self._token != stale_token:
            # Someone else already rotated past the caller's token
            return self._token
        return await self._lead()

    async def _lead(self) -> str:
        self._state = RefreshState.IN_FLIGHT
        self.refresh_count += 1
        try:
            token = await asyncio.wait_for(self._refresh(), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = RefreshFailedError("Token refresh timed out", timed_out=True)
            await self._fail(error, "timeout")
            raise error
        except asyncio.CancelledError:
            # Leader gone; waiters must not hang on a refresh nobody is running
            self._state = RefreshState.IDLE
            self._reject_waiters(RefreshFailedError("Token refresh cancelled"))
            raise
        except Exception as exc:
            error = RefreshFailedError(f"Token refresh failed: {exc}")
            await self._fail(error, type(exc).__name__)
            raise error from exc

        self._token = token
        self._state = RefreshState.SUCCEEDED
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(token)
        logger.info("token_refresh_succeeded", waiters=len(waiters))
        return token

    def _reject_waiters(self, error: RefreshFailedError) -> int:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)
        return len(waiters)

    async def _fail(self, error: RefreshFailedError, reason: str) -> None:
        self._token = None
        self._state = RefreshState.FAILED
        self._failure = error
        rejected = self._reject_waiters(error)
        logger.warning("token_refresh_failed", reason=reason, waiters=rejected)
        if self._on_failure is None:
            return
        try:
            outcome = self._on_failure(error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error("token_refresh_failure_hook_error", error=str(exc))
