from __future__ import annotations

from typing import Any, Callable, Optional

import httpx

from authsession.client.refresh import RefreshCoordinator, RefreshFailedError
from authsession.logging import get_logger

logger = get_logger(__name__)

# 401 codes that a refresh can cure; invalid_token and session_revoked cannot
_REFRESHABLE_CODES = frozenset({"token_expired"})


class AuthClientError(Exception):
    """Error envelope returned by the API."""

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "AuthClientError":
        code, message, details = _error_fields(response)
        return cls(response.status_code, code, message, details)


def _error_fields(response: httpx.Response) -> tuple[str, str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return "server_error", response.text or "unexpected response", None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return "server_error", "unexpected response", None
    return error.get("code", "server_error"), error.get("message", ""), error.get("details")


class AuthClient:
    """Async API client that refreshes an expired access token once per episode.

    The refresh token rides in the httpx cookie jar. A request answered with
    401 ``token_expired`` waits on the shared refresh and is replayed once
    with the new token.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_prefix: str = "/api/v1/user",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        refresh_timeout: float = 10.0,
        on_session_lost: Optional[Callable[[RefreshFailedError], Any]] = None,
    ) -> None:
        self.api_prefix = api_prefix.rstrip("/")
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.refresher = RefreshCoordinator(
            self._refresh, timeout=refresh_timeout, on_failure=on_session_lost
        )

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def access_token(self) -> Optional[str]:
        return self.refresher.token

    def _path(self, endpoint: str) -> str:
        return f"{self.api_prefix}/{endpoint.lstrip('/')}"

    @staticmethod
    def _data(response: httpx.Response) -> Any:
        if response.is_error:
            raise AuthClientError.from_response(response)
        return response.json().get("data")

    async def _send(
        self, method: str, endpoint: str, token: Optional[str], **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._http.request(method, self._path(endpoint), headers=headers, **kwargs)

    async def _refresh(self) -> str:
        response = await self._http.post(self._path("/refresh-token"))
        data = self._data(response)
        return data["access_token"]

    async def request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, replaying it once after a refresh.

        Raises:
            RefreshFailedError: The access token expired and the refresh failed
        """
        token = self.refresher.token
        response = await self._send(method, endpoint, token, **kwargs)
        if response.status_code != 401:
            return response
        code, _, _ = _error_fields(response)
        if code not in _REFRESHABLE_CODES:
            return response
        logger.info("access_token_expired", endpoint=endpoint)
        fresh = await self.refresher.await_fresh_token(token)
        return await self._send(method, endpoint, fresh, **kwargs)

    async def register(self, email: str, password: str, first_name: str, last_name: str) -> dict:
        response = await self._http.post(
            self._path("/register"),
            json={
                "email": email,
                "password": password,
                "first_name": first_name,
                "last_name": last_name,
            },
        )
        return self._data(response)

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> dict:
        """Log in; a ``two_factor_required`` answer must be finished with ``login_two_factor``."""
        response = await self._http.post(
            self._path("/login"),
            json={"email": email, "password": password, "remember_me": remember_me},
        )
        data = self._data(response)
        if data.get("access_token"):
            self.refresher.set_token(data["access_token"])
        return data

    async def login_two_factor(
        self, temp_token: str, code: str, *, remember_me: bool = False
    ) -> dict:
        response = await self._http.post(
            self._path("/2fa/login"),
            json={"temp_token": temp_token, "token": code, "remember_me": remember_me},
        )
        data = self._data(response)
        self.refresher.set_token(data["access_token"])
        return data

    async def me(self) -> dict:
        return self._data(await self.request("GET", "/me"))

    async def sessions(self) -> list:
        return self._data(await self.request("GET", "/sessions"))

    async def logout(
        self, *, session_id: Optional[str] = None, terminate_all_others: bool = False
    ) -> dict:
        body: dict[str, Any] = {"terminate_all_others": terminate_all_others}
        if session_id:
            body["session_id"] = session_id
        data = self._data(await self.request("POST", "/logout", json=body))
        if not session_id and not terminate_all_others:
            self.refresher.set_token(None)
        return data
