"""Composition root wiring the session and realtime layers together."""

from __future__ import annotations

import inspect
import logging
from typing import Any

import httpx

from .auth import AuthApi, RefreshCoordinator
from .client import AuthenticatedRequestClient, SessionLostHandler
from .config import SyncConfig
from .dispatch import EventDispatcher
from .errors import SESSION_EXPIRED_MESSAGE
from .hub.connection import HubFactory
from .polling import PollingFallback
from .realtime import RealtimeConnectionManager
from .session import SessionStore
from .storage import InMemoryKeyValueStore, KeyValueStore
from .types import Session

logger = logging.getLogger("runnersync.service")

SESSION_LOST_MESSAGE = SESSION_EXPIRED_MESSAGE
LOGGED_OUT_MESSAGE = "Logged out successfully."


class SyncService:
    """One instance per process: owns every collaborator and their lifecycle.

    ``on_session_lost(message)`` is called whenever the session ends without
    the caller asking for it (refresh failure, unrecoverable 401) and on
    explicit logout; it is where an application redirects to its login view.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        store: KeyValueStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        hub_factory: HubFactory | None = None,
        on_session_lost: SessionLostHandler | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.config.request_timeout)
        self._on_session_lost = on_session_lost

        self.sessions = SessionStore.from_config(self.config, store or InMemoryKeyValueStore())
        self.auth = AuthApi(self.config, client=self._http)
        self.refresher = RefreshCoordinator(self.sessions, self.auth)
        self.requests = AuthenticatedRequestClient(
            self.config,
            self.sessions,
            self.refresher,
            client=self._http,
            on_session_lost=self._session_lost,
        )
        self.dispatcher = EventDispatcher(debounce_delay=self.config.debounce_delay)
        self.polling = PollingFallback(self.config, self.sessions, self.dispatcher, client=self._http)
        self.realtime = RealtimeConnectionManager(
            self.config,
            self.sessions,
            self.dispatcher,
            self.polling,
            hub_factory,
            http_client=self._http,
        )
        self.sessions.set_refresh_hook(self._scheduled_refresh)
        self._started = False
        self._closed = False

    async def __aenter__(self) -> SyncService:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> bool:
        """Restore a persisted session and start realtime when it is valid."""
        if self._started:
            return self.sessions.is_authenticated()
        self._started = True
        restored = self.sessions.restore()
        logger.info("service_started", extra={"authenticated": restored})
        if restored:
            await self.realtime.connect()
        return restored

    async def dispose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.realtime.dispose()
        await self.dispatcher.dispose()
        await self.sessions.dispose()
        await self.refresher.dispose()
        if self._owns_client:
            await self._http.aclose()
        logger.info("service_stopped")

    async def login(self, email: str, password: str) -> Session:
        result = await self.auth.login(email, password)
        session = self.sessions.save_or_raise(result.token, result.user, result.refresh_token)
        logger.info("login_succeeded", extra={"user": email})
        if self._started:
            await self.realtime.connect()
        return session

    async def logout(self, message: str = LOGGED_OUT_MESSAGE) -> None:
        await self.realtime.disconnect()
        self.sessions.clear()
        logger.info("logout")
        await self._notify_session_lost(message)

    async def _scheduled_refresh(self) -> bool:
        refreshed = await self.refresher.refresh()
        if not refreshed:
            await self._session_lost(SESSION_LOST_MESSAGE)
        return refreshed

    async def _session_lost(self, message: str) -> None:
        await self.realtime.disconnect()
        await self._notify_session_lost(message)

    async def _notify_session_lost(self, message: str) -> None:
        handler = self._on_session_lost
        if handler is None:
            return
        try:
            outcome = handler(message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("session_lost_handler_failed")


__all__ = ["LOGGED_OUT_MESSAGE", "SESSION_LOST_MESSAGE", "SyncService"]
