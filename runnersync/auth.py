"""Auth endpoint client and single-flight token refresh."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx
from pydantic import ValidationError

from .config import SyncConfig
from .errors import InvalidCredentialsError, NetworkError, RequestError
from .session import SessionStore
from .types import LoginResult, RefreshResult, VerifyResult

logger = logging.getLogger("runnersync.auth")


def error_detail(response: httpx.Response) -> str | None:
    """Best-effort human readable message from an error response body."""
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(payload, Mapping):
        return None
    error = payload.get("error")
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    for key in ("message", "detail", "title"):
        value = payload.get(key)
        if value:
            return str(value)
    return None


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return None


class AuthApi:
    """Thin wrapper over the ``<base>/Auth/*`` endpoints."""

    def __init__(self, config: SyncConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._config.request_timeout) as client:
            yield client

    def _base_headers(self, bearer: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Client": self._config.client_header,
        }
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def _post(self, action: str, *, bearer: str | None = None, body: Any = None) -> httpx.Response:
        url = self._config.auth_url(action)
        try:
            async with self._client_context() as client:
                return await client.post(url, json=body, headers=self._base_headers(bearer))
        except httpx.HTTPError as exc:
            raise NetworkError(f"Auth {action} request failed: {exc}") from exc

    async def login(self, email: str, password: str) -> LoginResult:
        response = await self._post("login", body={"email": email, "password": password})
        if response.status_code == 401:
            raise InvalidCredentialsError(error_detail(response) or "Invalid email or password")
        if not response.is_success:
            raise RequestError(response.status_code, error_detail(response))
        try:
            return LoginResult.model_validate(_json_or_none(response))
        except ValidationError as exc:
            raise RequestError(response.status_code, "Malformed login response") from exc

    async def verify(self, token: str) -> VerifyResult:
        response = await self._post("verify", bearer=token)
        if not response.is_success:
            logger.debug("token_verify_rejected", extra={"status": response.status_code})
            return VerifyResult(success=False)
        try:
            return VerifyResult.model_validate(_json_or_none(response))
        except ValidationError:
            return VerifyResult(success=False)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        response = await self._post("refresh", bearer=refresh_token, body={"refreshToken": refresh_token})
        if not response.is_success:
            logger.debug("token_refresh_rejected", extra={"status": response.status_code})
            return RefreshResult(success=False)
        try:
            return RefreshResult.model_validate(_json_or_none(response))
        except ValidationError:
            return RefreshResult(success=False)


class RefreshCoordinator:
    """Runs at most one verify/refresh operation at a time.

    Concurrent callers share a single task and all observe its outcome. The
    check-and-set of the in-flight task happens without an intervening
    ``await``, which is what makes it exclusive on one event loop.
    """

    def __init__(self, sessions: SessionStore, api: AuthApi) -> None:
        self._sessions = sessions
        self._api = api
        self._inflight: asyncio.Task[bool] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    async def refresh(self) -> bool:
        task = self._inflight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run())
            self._inflight = task
            self._sessions.session.refresh_in_flight = True
            task.add_done_callback(self._release)
        else:
            logger.debug("token_refresh_joined")
        return await asyncio.shield(task)

    async def dispose(self) -> None:
        task, self._inflight = self._inflight, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _release(self, task: asyncio.Task[bool]) -> None:
        if self._inflight is task:
            self._inflight = None
            self._sessions.session.refresh_in_flight = False

    async def _run(self) -> bool:
        try:
            return await self._verify_or_exchange()
        except Exception:
            logger.exception("token_refresh_crashed")
            self._sessions.clear()
            return False
        finally:
            self._inflight = None
            self._sessions.session.refresh_in_flight = False

    async def _verify_or_exchange(self) -> bool:
        token = self._sessions.access_token
        if token:
            try:
                verified = await self._api.verify(token)
            except NetworkError as exc:
                logger.warning("token_verify_network_error", extra={"error": str(exc)})
                verified = VerifyResult(success=False)
            if verified.success and verified.user is not None:
                logger.info("token_verified")
                self._sessions.arm_refresh_timer()
                return True

        refresh_token = self._sessions.refresh_token
        if not refresh_token:
            logger.info("token_refresh_unavailable")
            self._sessions.clear()
            return False

        try:
            result = await self._api.refresh(refresh_token)
        except NetworkError as exc:
            logger.warning("token_refresh_network_error", extra={"error": str(exc)})
            self._sessions.clear()
            return False

        if not result.success or not result.token:
            logger.info("token_refresh_rejected")
            self._sessions.clear()
            return False

        user = result.user or self._sessions.user
        if not self._sessions.save(result.token, user, result.refresh_token or refresh_token):
            self._sessions.clear()
            return False
        logger.info("token_refreshed")
        return True


__all__ = ["AuthApi", "RefreshCoordinator", "error_detail"]
