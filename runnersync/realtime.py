"""Realtime hub connection state machine with polling fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from functools import partial
from typing import Any

import httpx

from .config import SyncConfig, outer_retry_delay
from .dispatch import EventDispatcher
from .errors import HubConnectionError, RetriesExhaustedError
from .hub.connection import HubConnection, HubFactory, WebSocketHubConnection
from .polling import PollingFallback
from .session import SessionStore
from .types import (
    AdminChanged,
    AdminConnected,
    AdminDisconnected,
    ChangeType,
    ConnectionInfo,
    ConnectionState,
    ConnectionStatus,
    CurrentAdmins,
    DataVersionChanged,
    HubEvent,
    HubEventKind,
    PublicCaseChanged,
    RunnerChanged,
    SignalName,
    SystemStatusChanged,
    UserChanged,
    parse_hub_event,
)

logger = logging.getLogger("runnersync.realtime")

JOIN_ADMIN_GROUP = "JoinAdminGroup"

StatusListener = Callable[[ConnectionStatus], Any]


class RealtimeConnectionManager:
    """Owns the hub connection and degrades to data-version polling.

    Each full connect attempt builds a fresh hub client. A failed attempt, or
    a hub that closes with an error after its own reconnect schedule ran out,
    counts against ``max_outer_retries``; the next attempt waits
    ``outer_retry_base_delay * retry_count``. Once the budget is spent the
    manager enters ``PollingFallback`` and never touches the hub again until
    :meth:`disconnect` resets it.
    """

    def __init__(
        self,
        config: SyncConfig,
        sessions: SessionStore,
        dispatcher: EventDispatcher,
        polling: PollingFallback,
        hub_factory: HubFactory | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._dispatcher = dispatcher
        self._polling = polling
        self._hub_factory = hub_factory or self._default_hub_factory
        self._http_client = http_client

        self._state = ConnectionState.DISCONNECTED
        self._hub: HubConnection | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._broadcasts: set[asyncio.Task[None]] = set()
        self._status_listeners: list[StatusListener] = []
        self._hub_version: str | None = None

        self.retry_count = 0
        self.connect_attempts = 0
        self.last_error: Exception | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.from_state(self._state)

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_data_version(self) -> str | None:
        return self._polling.last_version_seen or self._hub_version

    def on_status_change(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_data_version": self.last_data_version,
            "is_polling": self._polling.is_polling,
        }

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug("connection_state_changed", extra={"from": previous.value, "to": state.value})
        status = ConnectionStatus.from_state(state)
        if status is ConnectionStatus.from_state(previous):
            return
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("status_listener_failed", extra={"status": status.value})

    # ------------------------------------------------------------------
    # Connect / retry
    # ------------------------------------------------------------------

    def _default_hub_factory(self, hub_url: str, **options: Any) -> HubConnection:
        return WebSocketHubConnection(
            hub_url,
            http_client=self._http_client,
            headers={"X-Client": self._config.client_header},
            request_timeout=self._config.request_timeout,
            **options,
        )

    def _build_hub(self) -> HubConnection:
        hub = self._hub_factory(
            self._config.hub_url,
            access_token_factory=lambda: self._sessions.access_token or "",
            reconnect_policy=self._config.reconnect_schedule,
        )
        for kind in HubEventKind:
            hub.on(kind.value, partial(self._on_hub_message, kind.value))
        hub.on_reconnecting(partial(self._on_hub_reconnecting, hub))
        hub.on_reconnected(partial(self._on_hub_reconnected, hub))
        hub.on_close(partial(self._on_hub_closed, hub))
        return hub

    async def connect(self) -> ConnectionState:
        if self._state is ConnectionState.POLLING_FALLBACK:
            logger.debug("connect_skipped", extra={"reason": "polling_fallback"})
            return self._state
        if self._hub is not None or self._state is ConnectionState.CONNECTING:
            return self._state
        self._cancel_retry()

        self._set_state(ConnectionState.CONNECTING)
        self.connect_attempts += 1
        hub = self._build_hub()
        self._hub = hub
        try:
            await hub.start()
        except Exception as exc:
            if self._hub is not hub:
                # disconnected while the start was in flight
                return self._state
            self._hub = None
            await self._handle_connect_failure(exc)
            return self._state
        if self._hub is not hub:
            # disconnected while the start was in flight
            await hub.stop()
            return self._state

        self.retry_count = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        logger.info("realtime_connected", extra={"attempt": self.connect_attempts})
        await self._join_admin_group(hub)
        return self._state

    async def _handle_connect_failure(self, exc: Exception) -> None:
        self.retry_count += 1
        self.last_error = exc
        logger.warning(
            "realtime_connect_failed",
            extra={"retry_count": self.retry_count, "error": str(exc)},
        )
        if self.retry_count < self._config.max_outer_retries:
            delay = outer_retry_delay(self.retry_count, self._config.outer_retry_base_delay)
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_retry(delay)
            return
        self._enter_polling_fallback()

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        loop = asyncio.get_running_loop()
        self._retry_task = loop.create_task(self._retry_after(delay))
        logger.info("realtime_retry_scheduled", extra={"delay": delay, "retry_count": self.retry_count})

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.connect()

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _enter_polling_fallback(self) -> None:
        self.last_error = RetriesExhaustedError(self.retry_count)
        self._set_state(ConnectionState.POLLING_FALLBACK)
        logger.warning("realtime_polling_fallback", extra={"retry_count": self.retry_count})
        self._polling.start()

    async def _join_admin_group(self, hub: HubConnection) -> None:
        try:
            await hub.invoke(JOIN_ADMIN_GROUP)
        except Exception as exc:
            logger.warning("join_admin_group_failed", extra={"error": str(exc)})

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _on_hub_reconnecting(self, hub: HubConnection, error: Exception | None) -> None:
        if hub is not self._hub:
            return
        logger.info("realtime_reconnecting", extra={"error": str(error) if error else None})
        self._set_state(ConnectionState.RECONNECTING)

    async def _on_hub_reconnected(self, hub: HubConnection, connection_id: str | None) -> None:
        if hub is not self._hub:
            return
        self.retry_count = 0
        self._set_state(ConnectionState.CONNECTED)
        logger.info("realtime_reconnected", extra={"connection_id": connection_id})
        await self._join_admin_group(hub)

    async def _on_hub_closed(self, hub: HubConnection, error: Exception | None) -> None:
        if hub is not self._hub:
            return
        self._hub = None
        if error is None:
            logger.info("realtime_closed")
            self._set_state(ConnectionState.DISCONNECTED)
            return
        await self._handle_connect_failure(error)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _on_hub_message(self, target: str, *arguments: Any) -> None:
        event = parse_hub_event(target, arguments)
        if event is None:
            logger.debug("hub_event_unknown", extra={"target": target})
            return
        self.route(event)

    def route(self, event: HubEvent) -> None:
        """Send one inbound hub event to the dispatcher."""
        dispatcher = self._dispatcher
        match event:
            case UserChanged():
                dispatcher.enqueue(ChangeType.USER, event.data)
            case RunnerChanged():
                dispatcher.enqueue(ChangeType.RUNNER, event.data)
            case AdminChanged():
                dispatcher.enqueue(ChangeType.ADMIN, event.data)
            case PublicCaseChanged():
                dispatcher.enqueue(ChangeType.PUBLIC_CASE, event.data)
            case SystemStatusChanged():
                dispatcher.emit(SignalName.SYSTEM_STATUS_CHANGED, event.data)
            case DataVersionChanged():
                self._hub_version = event.version
                dispatcher.emit(
                    SignalName.DATA_VERSION_CHANGED,
                    {"version": event.version, "timestamp": time.time()},
                )
            case AdminConnected():
                dispatcher.emit(SignalName.ADMIN_CONNECTED, event.data)
            case AdminDisconnected():
                dispatcher.emit(SignalName.ADMIN_DISCONNECTED, event.data)
            case CurrentAdmins():
                dispatcher.emit(SignalName.CURRENT_ADMINS, event.data)
            case ConnectionInfo():
                dispatcher.emit(SignalName.CONNECTION_INFO, event.data)

    # ------------------------------------------------------------------
    # Outbound broadcasts
    # ------------------------------------------------------------------

    def broadcast_user_change(self, operation: str, data: Any) -> asyncio.Task[None] | None:
        return self._broadcast("BroadcastUserChange", operation, data)

    def broadcast_runner_change(self, operation: str, data: Any) -> asyncio.Task[None] | None:
        return self._broadcast("BroadcastRunnerChange", operation, data)

    def broadcast_admin_change(self, operation: str, data: Any) -> asyncio.Task[None] | None:
        return self._broadcast("BroadcastAdminChange", operation, data)

    def broadcast_public_case_change(self, operation: str, data: Any) -> asyncio.Task[None] | None:
        return self._broadcast("BroadcastPublicCaseChange", operation, data)

    def _broadcast(self, target: str, operation: str, data: Any) -> asyncio.Task[None] | None:
        hub = self._hub
        if hub is None or self._state is not ConnectionState.CONNECTED:
            logger.debug("broadcast_skipped", extra={"target": target, "state": self._state.value})
            return None
        task = asyncio.get_running_loop().create_task(self._invoke_quietly(hub, target, operation, data))
        self._broadcasts.add(task)
        task.add_done_callback(self._broadcasts.discard)
        return task

    async def _invoke_quietly(self, hub: HubConnection, target: str, operation: str, data: Any) -> None:
        try:
            await hub.invoke(target, operation, data)
        except Exception as exc:
            logger.warning("broadcast_failed", extra={"target": target, "error": str(exc)})

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def disconnect(self) -> None:
        """Stop the hub, any scheduled retry and polling; returns to ``Disconnected``."""
        self._cancel_retry()
        hub, self._hub = self._hub, None
        if hub is not None:
            try:
                await hub.stop()
            except HubConnectionError as exc:
                logger.warning("hub_stop_failed", extra={"error": str(exc)})
        await self._polling.stop()
        self.retry_count = 0
        self._set_state(ConnectionState.DISCONNECTED)

    async def dispose(self) -> None:
        await self.disconnect()
        tasks = list(self._broadcasts)
        self._broadcasts.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["JOIN_ADMIN_GROUP", "RealtimeConnectionManager", "StatusListener"]
