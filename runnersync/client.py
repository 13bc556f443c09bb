"""Bearer-authenticated REST client with refresh-on-401."""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx

from .auth import RefreshCoordinator, error_detail
from .config import SyncConfig
from .errors import SESSION_EXPIRED_MESSAGE, NetworkError, RequestError, SessionExpiredError
from .session import SessionStore

logger = logging.getLogger("runnersync.client")

_AUTH_FAILURE_MARKERS = ("unauthorized", "token expired", "invalid token", "session expired")

SessionLostHandler = Callable[[str], Any]


def is_auth_failure(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    if response.is_success:
        return False
    detail = (error_detail(response) or "").lower()
    return any(marker in detail for marker in _AUTH_FAILURE_MARKERS)


class AuthenticatedRequestClient:
    """Issues API calls with the current bearer header.

    On an authorization failure it runs a single refresh. The original request
    is never retried here: a failed refresh raises ``SessionExpiredError`` and
    fires ``on_session_lost``; a successful one raises ``RequestError`` so the
    caller can decide whether to retry with the renewed session.
    """

    def __init__(
        self,
        config: SyncConfig,
        sessions: SessionStore,
        refresher: RefreshCoordinator,
        *,
        client: httpx.AsyncClient | None = None,
        on_session_lost: SessionLostHandler | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._refresher = refresher
        self._client = client
        self._on_session_lost = on_session_lost

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._config.request_timeout) as client:
            yield client

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._config.api_base_url}/{path.lstrip('/')}"

    def _headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Client": self._config.client_header,
        }
        headers.update(self._sessions.auth_header())
        if extra:
            headers.update(extra)
        return headers

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        try:
            async with self._client_context() as client:
                response = await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._headers(headers),
                )
        except httpx.HTTPError as exc:
            logger.warning("api_request_network_error", extra={"method": method, "url": url})
            raise NetworkError("Network error. Please check your connection.") from exc

        if is_auth_failure(response):
            await self._handle_auth_failure(method, url)
        if not response.is_success:
            raise RequestError(response.status_code, error_detail(response))
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.send(method, path, **kwargs)
        if not response.content:
            return None
        return response.json()

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def _handle_auth_failure(self, method: str, url: str) -> None:
        logger.info("api_request_unauthorized", extra={"method": method, "url": url})
        refreshed = await self._refresher.refresh()
        if not refreshed:
            if self._on_session_lost is not None:
                outcome = self._on_session_lost(SESSION_EXPIRED_MESSAGE)
                if inspect.isawaitable(outcome):
                    await outcome
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)
        raise RequestError(401, "Session was refreshed; the request was not retried.")


__all__ = [
    "SESSION_EXPIRED_MESSAGE",
    "AuthenticatedRequestClient",
    "SessionLostHandler",
    "is_auth_failure",
]
