"""Resilient session and realtime sync client for the 241 Runners admin dashboard."""

from .auth import AuthApi, RefreshCoordinator
from .client import AuthenticatedRequestClient
from .config import BackoffPolicy, SyncConfig, outer_retry_delay
from .dispatch import EventDispatcher
from .errors import (
    HubConnectionError,
    HubProtocolError,
    InvalidCredentialsError,
    NetworkError,
    RequestError,
    RetriesExhaustedError,
    SessionExpiredError,
    SyncError,
)
from .hub import HubConnection, WebSocketHubConnection
from .polling import PollingFallback
from .realtime import RealtimeConnectionManager
from .service import SyncService
from .session import SessionStore
from .storage import InMemoryKeyValueStore, KeyValueStore, SqliteKeyValueStore
from .types import (
    ChangeType,
    ConnectionState,
    ConnectionStatus,
    HubEvent,
    HubEventKind,
    Session,
    SignalName,
    UserRecord,
    parse_hub_event,
)

__version__ = "0.3.0"

__all__ = [
    "AuthApi",
    "AuthenticatedRequestClient",
    "BackoffPolicy",
    "ChangeType",
    "ConnectionState",
    "ConnectionStatus",
    "EventDispatcher",
    "HubConnection",
    "HubConnectionError",
    "HubEvent",
    "HubEventKind",
    "HubProtocolError",
    "InMemoryKeyValueStore",
    "InvalidCredentialsError",
    "KeyValueStore",
    "NetworkError",
    "PollingFallback",
    "RealtimeConnectionManager",
    "RefreshCoordinator",
    "RequestError",
    "RetriesExhaustedError",
    "Session",
    "SessionExpiredError",
    "SessionStore",
    "SignalName",
    "SqliteKeyValueStore",
    "SyncConfig",
    "SyncError",
    "SyncService",
    "UserRecord",
    "WebSocketHubConnection",
    "outer_retry_delay",
    "parse_hub_event",
    "__version__",
]
