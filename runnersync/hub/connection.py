"""Hub client over WebSockets with an automatic-reconnect schedule."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import BackoffPolicy
from ..errors import HubConnectionError, HubProtocolError, NetworkError
from ..types import ConnectionState
from . import protocol

logger = logging.getLogger("runnersync.hub")

InvocationHandler = Callable[..., Any]
CloseCallback = Callable[[Exception | None], Any]
ReconnectingCallback = Callable[[Exception | None], Any]
ReconnectedCallback = Callable[[str | None], Any]
TokenFactory = Callable[[], Any]
Connector = Callable[[str], Awaitable[Any]]


class HubConnection(Protocol):
    """Surface the realtime manager needs from a hub client."""

    @property
    def state(self) -> ConnectionState: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def invoke(self, target: str, *args: Any) -> Any: ...

    def on(self, target: str, handler: InvocationHandler) -> None: ...

    def on_close(self, callback: CloseCallback) -> None: ...

    def on_reconnecting(self, callback: ReconnectingCallback) -> None: ...

    def on_reconnected(self, callback: ReconnectedCallback) -> None: ...


HubFactory = Callable[..., HubConnection]


async def _call_safely(callback: Callable[..., Any], *args: Any, event: str) -> None:
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("hub_callback_failed", extra={"event": event})


def websocket_url(hub_url: str, connection_token: str | None, access_token: str | None) -> str:
    url = httpx.URL(hub_url)
    scheme = {"https": "wss", "http": "ws"}.get(url.scheme, url.scheme)
    params: dict[str, str] = dict(url.params)
    if connection_token:
        params["id"] = connection_token
    if access_token:
        params["access_token"] = access_token
    return str(url.copy_with(scheme=scheme, params=params))


class WebSocketHubConnection:
    """Client for the JSON hub protocol over a WebSocket transport.

    ``start`` negotiates, opens the socket and completes the handshake. A
    transport drop after that runs ``reconnect_policy``: ``on_reconnecting``
    fires once before the first attempt, ``on_reconnected`` after a successful
    one, and ``on_close`` when the schedule is exhausted or the server closes
    without allowing a reconnect. Those run as separate tasks so a callback
    may ``invoke`` on this connection. ``stop`` awaits its ``on_close``.
    """

    def __init__(
        self,
        hub_url: str,
        *,
        access_token_factory: TokenFactory | None = None,
        reconnect_policy: BackoffPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        request_timeout: float = 10.0,
        handshake_timeout: float = 15.0,
        keep_alive_interval: float = 15.0,
        connector: Connector | None = None,
    ) -> None:
        self._hub_url = hub_url.rstrip("/")
        self._token_factory = access_token_factory
        self._policy = reconnect_policy or BackoffPolicy()
        self._http_client = http_client
        self._headers = dict(headers or {})
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._keep_alive_interval = keep_alive_interval
        self._connector: Connector = connector or websockets.connect

        self._state = ConnectionState.DISCONNECTED
        self._socket: Any = None
        self._connection_id: str | None = None
        self._stopping = False
        self._reader: asyncio.Task[None] | None = None
        self._keep_alive: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._invocation_ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._handlers: dict[str, list[InvocationHandler]] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._reconnecting_callbacks: list[ReconnectingCallback] = []
        self._reconnected_callbacks: list[ReconnectedCallback] = []
        self._callback_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    def on(self, target: str, handler: InvocationHandler) -> None:
        self._handlers.setdefault(target.lower(), []).append(handler)

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def on_reconnecting(self, callback: ReconnectingCallback) -> None:
        self._reconnecting_callbacks.append(callback)

    def on_reconnected(self, callback: ReconnectedCallback) -> None:
        self._reconnected_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            raise HubConnectionError(f"Cannot start a hub connection in the {self._state.value} state")
        self._stopping = False
        self._state = ConnectionState.CONNECTING
        try:
            await self._open()
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._state = ConnectionState.CONNECTED
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(self._run())
        logger.info("hub_connected", extra={"connection_id": self._connection_id})

    async def stop(self) -> None:
        if self._state is ConnectionState.DISCONNECTED and self._reader is None:
            return
        self._stopping = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self._teardown(HubConnectionError("Invocation canceled due to the hub connection being stopped."))
        self._state = ConnectionState.DISCONNECTED
        logger.info("hub_stopped")
        await self._fire(self._close_callbacks, None, event="close")

    async def invoke(self, target: str, *args: Any) -> Any:
        if self._state is not ConnectionState.CONNECTED:
            raise HubConnectionError(f"Cannot invoke '{target}' while the hub is {self._state.value}")
        invocation_id = str(next(self._invocation_ids))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = future
        try:
            await self._send(protocol.invocation(target, args, invocation_id))
        except HubConnectionError:
            self._pending.pop(invocation_id, None)
            raise
        return await future

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._request_timeout) as client:
            yield client

    async def _access_token(self) -> str | None:
        if self._token_factory is None:
            return None
        token = self._token_factory()
        if inspect.isawaitable(token):
            token = await token
        return token or None

    async def negotiate(self, hub_url: str, access_token: str | None) -> dict[str, Any]:
        headers = dict(self._headers)
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        url = f"{hub_url}/negotiate"
        try:
            async with self._client_context() as client:
                response = await client.post(url, params={"negotiateVersion": 1}, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Hub negotiation failed: {exc}") from exc
        if not response.is_success:
            raise HubConnectionError(
                f"Hub negotiation returned HTTP {response.status_code}",
                extra={"status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise HubProtocolError("Hub negotiation returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise HubProtocolError("Hub negotiation returned an unexpected payload")
        if payload.get("error"):
            raise HubConnectionError(f"Hub negotiation rejected: {payload['error']}")
        return payload

    async def _open(self) -> None:
        hub_url = self._hub_url
        access_token = await self._access_token()
        payload = await self.negotiate(hub_url, access_token)
        # Service redirects hand out a new endpoint and token.
        for _ in range(5):
            if not payload.get("url"):
                break
            hub_url = str(payload["url"]).rstrip("/")
            access_token = payload.get("accessToken") or access_token
            payload = await self.negotiate(hub_url, access_token)

        transports = payload.get("availableTransports")
        if isinstance(transports, list) and transports:
            names = {str(item.get("transport")) for item in transports if isinstance(item, dict)}
            if "WebSockets" not in names:
                raise HubConnectionError("Hub does not offer the WebSockets transport")

        self._connection_id = payload.get("connectionId")
        connection_token = payload.get("connectionToken") or self._connection_id
        url = websocket_url(hub_url, connection_token, access_token)

        try:
            socket = await self._connector(url)
        except (WebSocketException, OSError) as exc:
            raise HubConnectionError(f"Hub WebSocket connection failed: {exc}") from exc

        try:
            await socket.send(protocol.HANDSHAKE_REQUEST)
            raw = await asyncio.wait_for(socket.recv(), timeout=self._handshake_timeout)
            trailing = protocol.parse_handshake_response(raw)
        except HubProtocolError:
            await self._close_quietly(socket)
            raise
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            await self._close_quietly(socket)
            raise HubConnectionError(f"Hub handshake failed: {exc}") from exc

        self._socket = socket
        self._start_keep_alive()
        for message in trailing:
            await self._handle_message(message)

    # ------------------------------------------------------------------
    # Receive loop and reconnect
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            error, allow_reconnect = await self._receive_until_closed()
            if self._stopping:
                return
            await self._teardown(error or HubConnectionError("Hub connection lost"))
            if allow_reconnect and await self._reconnect(error):
                continue
            self._state = ConnectionState.DISCONNECTED
            self._reader = None
            logger.warning("hub_closed", extra={"error": str(error) if error else None})
            self._fire_in_background(self._close_callbacks, error, event="close")
            return

    async def _receive_until_closed(self) -> tuple[Exception | None, bool]:
        socket = self._socket
        try:
            while True:
                raw = await socket.recv()
                for message in protocol.decode_frames(raw):
                    if message.get("type") == protocol.CLOSE:
                        error = message.get("error")
                        exc = HubConnectionError(f"Server closed the connection: {error}") if error else None
                        return exc, bool(message.get("allowReconnect"))
                    await self._handle_message(message)
        except ConnectionClosed as exc:
            return HubConnectionError(f"Hub WebSocket closed: {exc}"), True
        except HubProtocolError as exc:
            return exc, True
        except (WebSocketException, OSError) as exc:
            return HubConnectionError(f"Hub transport error: {exc}"), True

    async def _reconnect(self, error: Exception | None) -> bool:
        self._state = ConnectionState.RECONNECTING
        logger.info("hub_reconnecting", extra={"error": str(error) if error else None})
        self._fire_in_background(self._reconnecting_callbacks, error, event="reconnecting")
        attempt = 0
        while not self._stopping:
            delay = self._policy.delay_for(attempt)
            if delay is None:
                logger.warning("hub_reconnect_exhausted", extra={"attempts": attempt})
                return False
            if delay > 0:
                await asyncio.sleep(delay)
            if self._stopping:
                return False
            attempt += 1
            try:
                await self._open()
            except (HubConnectionError, NetworkError) as exc:
                logger.warning("hub_reconnect_attempt_failed", extra={"attempt": attempt, "error": str(exc)})
                continue
            self._state = ConnectionState.CONNECTED
            logger.info("hub_reconnected", extra={"attempt": attempt, "connection_id": self._connection_id})
            self._fire_in_background(self._reconnected_callbacks, self._connection_id, event="reconnected")
            return True
        return False

    async def _handle_message(self, message: Mapping[str, Any]) -> None:
        kind = message.get("type")
        if kind == protocol.INVOCATION:
            await self._dispatch_invocation(message)
        elif kind == protocol.COMPLETION:
            self._complete(message)
        elif kind == protocol.PING:
            await self._send_quietly(protocol.ping())
        else:
            logger.debug("hub_message_ignored", extra={"type": kind})

    async def _dispatch_invocation(self, message: Mapping[str, Any]) -> None:
        target = str(message.get("target") or "")
        arguments = message.get("arguments") or []
        handlers = list(self._handlers.get(target.lower(), ()))
        if not handlers:
            logger.debug("hub_invocation_unhandled", extra={"target": target})
        for handler in handlers:
            await _call_safely(handler, *arguments, event=target)
        invocation_id = message.get("invocationId")
        if invocation_id is not None:
            await self._send_quietly(
                protocol.completion(str(invocation_id), error="Client does not return results for invocations.")
            )

    def _complete(self, message: Mapping[str, Any]) -> None:
        future = self._pending.pop(str(message.get("invocationId")), None)
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(HubConnectionError(str(error)))
        else:
            future.set_result(message.get("result"))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, frame: str) -> None:
        socket = self._socket
        if socket is None:
            raise HubConnectionError("Hub socket is not open")
        try:
            async with self._send_lock:
                await socket.send(frame)
        except (WebSocketException, OSError) as exc:
            raise HubConnectionError(f"Hub send failed: {exc}") from exc

    async def _send_quietly(self, frame: str) -> None:
        try:
            await self._send(frame)
        except HubConnectionError as exc:
            logger.debug("hub_send_failed", extra={"error": str(exc)})

    def _start_keep_alive(self) -> None:
        if self._keep_alive is not None:
            self._keep_alive.cancel()
        if self._keep_alive_interval <= 0:
            self._keep_alive = None
            return
        self._keep_alive = asyncio.get_running_loop().create_task(self._keep_alive_loop())

    async def _keep_alive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keep_alive_interval)
            await self._send_quietly(protocol.ping())

    async def _teardown(self, reason: Exception) -> None:
        keep_alive, self._keep_alive = self._keep_alive, None
        if keep_alive is not None and keep_alive is not asyncio.current_task():
            keep_alive.cancel()
            await asyncio.gather(keep_alive, return_exceptions=True)
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(reason)
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_quietly(socket)

    @staticmethod
    async def _close_quietly(socket: Any) -> None:
        try:
            await socket.close()
        except (WebSocketException, OSError) as exc:
            logger.debug("hub_socket_close_failed", extra={"error": str(exc)})

    @staticmethod
    async def _fire(callbacks: Iterable[Callable[..., Any]], arg: Any, *, event: str) -> None:
        for callback in list(callbacks):
            await _call_safely(callback, arg, event=event)

    def _fire_in_background(self, callbacks: Iterable[Callable[..., Any]], arg: Any, *, event: str) -> None:
        # The reader task must keep draining frames while callbacks await invocations.
        task = asyncio.get_running_loop().create_task(self._fire(list(callbacks), arg, event=event))
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)


__all__ = [
    "HubConnection",
    "HubFactory",
    "InvocationHandler",
    "WebSocketHubConnection",
    "websocket_url",
]
