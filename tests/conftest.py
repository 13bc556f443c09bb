import asyncio
import inspect
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from runnersync.config import SyncConfig  # noqa: E402
from runnersync.errors import HubConnectionError  # noqa: E402
from runnersync.session import SessionStore  # noqa: E402
from runnersync.storage import InMemoryKeyValueStore  # noqa: E402
from runnersync.types import ConnectionState  # noqa: E402

ADMIN_USER = {"id": "u-1", "email": "a@b.com", "role": "Admin", "name": "Ada"}
ADMIN_TOKEN = "token-abcdefghij"


async def _fire(callbacks: list[Callable[..., Any]], *args: Any) -> None:
    for callback in list(callbacks):
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome


class FakeHub:
    """In-memory hub connection driven explicitly by the tests."""

    def __init__(self, factory: "FakeHubFactory", hub_url: str, access_token_factory, reconnect_policy) -> None:
        self.factory = factory
        self.hub_url = hub_url
        self.access_token_factory = access_token_factory
        self.reconnect_policy = reconnect_policy
        self.state = ConnectionState.DISCONNECTED
        self.handlers: dict[str, list[Callable[..., Any]]] = {}
        self.close_callbacks: list[Callable[..., Any]] = []
        self.reconnecting_callbacks: list[Callable[..., Any]] = []
        self.reconnected_callbacks: list[Callable[..., Any]] = []
        self.invocations: list[tuple[str, tuple[Any, ...]]] = []
        self.tokens_seen: list[str] = []
        self.stopped = False

    async def start(self) -> None:
        self.factory.start_attempts += 1
        self.tokens_seen.append(self.access_token_factory())
        if self.factory.start_attempts <= self.factory.fail_times:
            raise HubConnectionError("hub unavailable")
        self.state = ConnectionState.CONNECTED

    async def stop(self) -> None:
        self.stopped = True
        self.state = ConnectionState.DISCONNECTED
        await _fire(self.close_callbacks, None)

    async def invoke(self, target: str, *args: Any) -> Any:
        self.invocations.append((target, args))
        if self.factory.invoke_error is not None and target != "JoinAdminGroup":
            raise self.factory.invoke_error
        return None

    def on(self, target: str, handler: Callable[..., Any]) -> None:
        self.handlers.setdefault(target.lower(), []).append(handler)

    def on_close(self, callback: Callable[..., Any]) -> None:
        self.close_callbacks.append(callback)

    def on_reconnecting(self, callback: Callable[..., Any]) -> None:
        self.reconnecting_callbacks.append(callback)

    def on_reconnected(self, callback: Callable[..., Any]) -> None:
        self.reconnected_callbacks.append(callback)

    def deliver(self, target: str, *args: Any) -> None:
        for handler in self.handlers.get(target.lower(), []):
            handler(*args)

    async def drop(self, error: Exception | None = None) -> None:
        self.state = ConnectionState.RECONNECTING
        await _fire(self.reconnecting_callbacks, error)

    async def recover(self) -> None:
        self.state = ConnectionState.CONNECTED
        await _fire(self.reconnected_callbacks, "conn-2")

    async def close(self, error: Exception | None) -> None:
        self.state = ConnectionState.DISCONNECTED
        await _fire(self.close_callbacks, error)


class FakeHubFactory:
    def __init__(self, *, fail_times: int = 0, invoke_error: Exception | None = None) -> None:
        self.fail_times = fail_times
        self.invoke_error = invoke_error
        self.start_attempts = 0
        self.hubs: list[FakeHub] = []

    def __call__(self, hub_url: str, *, access_token_factory, reconnect_policy) -> FakeHub:
        hub = FakeHub(self, hub_url, access_token_factory, reconnect_policy)
        self.hubs.append(hub)
        return hub

    @property
    def last(self) -> FakeHub:
        return self.hubs[-1]


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(
        api_base_url="https://api.test/api",
        hub_url="https://api.test/adminHub",
        reconnect_schedule=[0.0, 0.0],
        max_outer_retries=3,
        outer_retry_base_delay=0.0,
        debounce_delay=0.05,
        polling_interval=0.02,
        token_refresh_lead_time=300.0,
    )


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def sessions(config: SyncConfig, store: InMemoryKeyValueStore) -> SessionStore:
    return SessionStore.from_config(config, store)


@pytest.fixture
def admin_user() -> dict[str, Any]:
    return dict(ADMIN_USER)


@pytest.fixture
def hub_factory() -> FakeHubFactory:
    return FakeHubFactory()


@pytest.fixture
def eventually():
    async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
