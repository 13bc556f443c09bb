import asyncio

import httpx
import pytest

from runnersync.config import BackoffPolicy
from runnersync.dispatch import EventDispatcher
from runnersync.errors import HubConnectionError, NetworkError
from runnersync.hub import protocol
from runnersync.hub.connection import WebSocketHubConnection
from runnersync.polling import PollingFallback
from runnersync.realtime import JOIN_ADMIN_GROUP, RealtimeConnectionManager
from runnersync.types import ChangeType, ConnectionState


class FakeSocket:
    """Scripted WebSocket: tests push server frames into ``incoming``."""

    def __init__(self, *, handshake: str = "{}\x1e") -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.url: str | None = None
        self.incoming.put_nowait(handshake)

    async def send(self, frame: str) -> None:
        self.sent.append(frame)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def sent_messages(self) -> list[dict]:
        messages = []
        for frame in self.sent:
            messages.extend(protocol.decode_frames(frame))
        return messages


class SocketFactory:
    def __init__(self, *sockets) -> None:
        self.sockets = list(sockets)
        self.urls: list[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        item.url = url
        return item


def negotiate_handler(request: httpx.Request) -> httpx.Response:
    assert request.url.path == "/adminHub/negotiate"
    assert request.url.params["negotiateVersion"] == "1"
    return httpx.Response(
        200,
        json={
            "negotiateVersion": 1,
            "connectionId": "conn-1",
            "connectionToken": "conn-token-1",
            "availableTransports": [{"transport": "WebSockets", "transferFormats": ["Text", "Binary"]}],
        },
    )


def build_hub(client, connector, **kwargs) -> WebSocketHubConnection:
    return WebSocketHubConnection(
        "https://api.test/adminHub",
        access_token_factory=lambda: "token-abcdefghij",
        http_client=client,
        connector=connector,
        keep_alive_interval=0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_handshakes_and_dispatches_invocations(eventually):
    socket = FakeSocket()
    connector = SocketFactory(socket)
    received = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, connector)
        hub.on("UserChanged", lambda *args: received.append(args))
        await hub.start()

        assert hub.state is ConnectionState.CONNECTED
        assert hub.connection_id == "conn-1"
        assert socket.sent[0] == protocol.HANDSHAKE_REQUEST
        assert connector.urls == ["wss://api.test/adminHub?id=conn-token-1&access_token=token-abcdefghij"]

        socket.incoming.put_nowait(protocol.invocation("userchanged", ["updated", {"id": 1}]))
        await eventually(lambda: received == [("updated", {"id": 1})])

        socket.incoming.put_nowait(protocol.ping())
        await eventually(lambda: {"type": protocol.PING} in socket.sent_messages())

        await hub.stop()

    assert hub.state is ConnectionState.DISCONNECTED
    assert socket.closed is True


@pytest.mark.asyncio
async def test_invoke_resolves_on_completion(eventually):
    socket = FakeSocket()

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, SocketFactory(socket))
        await hub.start()

        pending = asyncio.create_task(hub.invoke("JoinAdminGroup"))
        await eventually(lambda: len(socket.sent) == 2)
        invocation = socket.sent_messages()[-1]
        assert invocation["target"] == "JoinAdminGroup"
        assert invocation["arguments"] == []

        socket.incoming.put_nowait(protocol.completion(invocation["invocationId"], result="joined"))
        assert await asyncio.wait_for(pending, timeout=1.0) == "joined"

        failing = asyncio.create_task(hub.invoke("BroadcastUserChange", "create", {"id": 2}))
        await eventually(lambda: len(socket.sent) == 3)
        invocation = socket.sent_messages()[-1]
        socket.incoming.put_nowait(protocol.completion(invocation["invocationId"], error="not allowed"))
        with pytest.raises(HubConnectionError, match="not allowed"):
            await asyncio.wait_for(failing, timeout=1.0)

        await hub.stop()


@pytest.mark.asyncio
async def test_invoke_requires_connected_state():
    hub = WebSocketHubConnection("https://api.test/adminHub")

    with pytest.raises(HubConnectionError):
        await hub.invoke("JoinAdminGroup")


@pytest.mark.asyncio
async def test_negotiate_failures_are_typed():
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline")

    async with httpx.AsyncClient(transport=httpx.MockTransport(rejected)) as client:
        hub = build_hub(client, SocketFactory())
        with pytest.raises(HubConnectionError):
            await hub.start()
        assert hub.state is ConnectionState.DISCONNECTED

    async with httpx.AsyncClient(transport=httpx.MockTransport(offline)) as client:
        with pytest.raises(NetworkError):
            await build_hub(client, SocketFactory()).start()


@pytest.mark.asyncio
async def test_rejected_handshake_closes_socket():
    socket = FakeSocket(handshake='{"error":"protocol not supported"}\x1e')

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, SocketFactory(socket))
        with pytest.raises(HubConnectionError):
            await hub.start()

    assert socket.closed is True
    assert hub.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_transport_drop_runs_reconnect_schedule(eventually):
    first, second = FakeSocket(), FakeSocket()
    connector = SocketFactory(first, OSError("refused"), second)
    events = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, connector, reconnect_policy=BackoffPolicy((0.0, 0.0, 0.0)))
        hub.on_reconnecting(lambda error: events.append(("reconnecting", type(error).__name__)))
        hub.on_reconnected(lambda connection_id: events.append(("reconnected", connection_id)))
        hub.on_close(lambda error: events.append(("close", error)))
        await hub.start()

        first.incoming.put_nowait(OSError("connection reset"))
        await eventually(lambda: hub.state is ConnectionState.CONNECTED and len(events) == 2)

        assert events == [("reconnecting", "HubConnectionError"), ("reconnected", "conn-1")]
        assert first.closed is True

        await hub.stop()

    assert events[-1] == ("close", None)


@pytest.mark.asyncio
async def test_exhausted_schedule_closes_with_error(eventually):
    first = FakeSocket()
    connector = SocketFactory(first, OSError("refused"))
    closed = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, connector, reconnect_policy=BackoffPolicy((0.0,)))
        hub.on_close(closed.append)
        await hub.start()

        first.incoming.put_nowait(OSError("connection reset"))
        await eventually(lambda: len(closed) == 1)

    assert isinstance(closed[0], HubConnectionError)
    assert hub.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_server_close_without_reconnect(eventually):
    socket = FakeSocket()
    connector = SocketFactory(socket)
    closed = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:
        hub = build_hub(client, connector)
        hub.on_close(closed.append)
        await hub.start()

        socket.incoming.put_nowait(protocol.close("Server is shutting down"))
        await eventually(lambda: len(closed) == 1)

    assert "Server is shutting down" in str(closed[0])
    assert len(connector.urls) == 1
    assert hub.state is ConnectionState.DISCONNECTED


class AnsweringSocket(FakeSocket):
    """Completes every client invocation that expects a result."""

    async def send(self, frame: str) -> None:
        await super().send(frame)
        for message in protocol.decode_frames(frame):
            if message.get("type") == protocol.INVOCATION and "invocationId" in message:
                self.incoming.put_nowait(protocol.completion(message["invocationId"]))


def joins(socket: FakeSocket) -> int:
    return sum(1 for message in socket.sent_messages() if message.get("target") == JOIN_ADMIN_GROUP)


@pytest.mark.asyncio
async def test_manager_keeps_receiving_after_automatic_reconnect(config, sessions, admin_user, eventually):
    sessions.save("token-abcdefghij", admin_user)
    first, second = AnsweringSocket(), AnsweringSocket()
    connector = SocketFactory(first, second)
    delivered = []

    async with httpx.AsyncClient(transport=httpx.MockTransport(negotiate_handler)) as client:

        def hub_factory(hub_url, *, access_token_factory, reconnect_policy):
            return WebSocketHubConnection(
                hub_url,
                access_token_factory=access_token_factory,
                reconnect_policy=reconnect_policy,
                http_client=client,
                connector=connector,
                keep_alive_interval=0,
            )

        dispatcher = EventDispatcher(debounce_delay=config.debounce_delay)
        dispatcher.on(ChangeType.USER, delivered.append)
        polling = PollingFallback(config, sessions, dispatcher, client=client)
        manager = RealtimeConnectionManager(config, sessions, dispatcher, polling, hub_factory)

        assert await manager.connect() is ConnectionState.CONNECTED
        assert joins(first) == 1

        first.incoming.put_nowait(OSError("connection reset"))
        await eventually(lambda: joins(second) == 1)
        assert manager.state is ConnectionState.CONNECTED

        second.incoming.put_nowait(protocol.invocation("UserChanged", [{"id": 7}]))
        await eventually(lambda: delivered == [{"id": 7}])

        await manager.dispose()
        await dispatcher.dispose()
