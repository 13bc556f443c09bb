"""Typed records shared by the session and realtime layers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class UserRecord(BaseModel):
    """User payload returned by the auth endpoints; unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Any | None = None
    email: str | None = None
    role: str | None = None
    name: str | None = None


@dataclass(slots=True)
class Session:
    access_token: str | None = None
    refresh_token: str | None = None
    role: str | None = None
    user: UserRecord | None = None
    expires_at: float | None = None
    refresh_in_flight: bool = False
    authenticated: bool = False

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (time.time() if now is None else now)

    def token_preview(self) -> str | None:
        if not self.access_token:
            return None
        return self.access_token[:8] + "..."


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"
    POLLING_FALLBACK = "PollingFallback"


class ConnectionStatus(str, Enum):
    """The three connection states shown to dashboard users."""

    CONNECTED = "Connected"
    POLLING = "Polling"
    DISCONNECTED = "Disconnected"

    @classmethod
    def from_state(cls, state: ConnectionState) -> ConnectionStatus:
        if state is ConnectionState.CONNECTED:
            return cls.CONNECTED
        if state is ConnectionState.POLLING_FALLBACK:
            return cls.POLLING
        return cls.DISCONNECTED


class ChangeType(str, Enum):
    """Entity change kinds that go through the debounced, coalescing path."""

    USER = "user"
    RUNNER = "runner"
    ADMIN = "admin"
    PUBLIC_CASE = "publicCase"


class SignalName(str, Enum):
    """Names emitted on the immediate, non-debounced path."""

    SYSTEM_STATUS_CHANGED = "systemStatusChanged"
    DATA_VERSION_CHANGED = "dataVersionChanged"
    ADMIN_CONNECTED = "adminConnected"
    ADMIN_DISCONNECTED = "adminDisconnected"
    CURRENT_ADMINS = "currentAdmins"
    CONNECTION_INFO = "connectionInfo"


class HubEventKind(str, Enum):
    """Inbound hub targets understood by the client."""

    USER_CHANGED = "UserChanged"
    RUNNER_CHANGED = "RunnerChanged"
    ADMIN_CHANGED = "AdminChanged"
    PUBLIC_CASE_CHANGED = "PublicCaseChanged"
    SYSTEM_STATUS_CHANGED = "SystemStatusChanged"
    DATA_VERSION_CHANGED = "DataVersionChanged"
    ADMIN_CONNECTED = "AdminConnected"
    ADMIN_DISCONNECTED = "AdminDisconnected"
    CURRENT_ADMINS = "CurrentAdmins"
    CONNECTION_INFO = "ConnectionInfo"


class _HubEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: Any = None


class UserChanged(_HubEventBase):
    kind: Literal["UserChanged"] = "UserChanged"


class RunnerChanged(_HubEventBase):
    kind: Literal["RunnerChanged"] = "RunnerChanged"


class AdminChanged(_HubEventBase):
    kind: Literal["AdminChanged"] = "AdminChanged"


class PublicCaseChanged(_HubEventBase):
    kind: Literal["PublicCaseChanged"] = "PublicCaseChanged"


class SystemStatusChanged(_HubEventBase):
    kind: Literal["SystemStatusChanged"] = "SystemStatusChanged"

    @property
    def status(self) -> str | None:
        if isinstance(self.data, dict):
            value = self.data.get("status") or self.data.get("Status")
            return str(value) if value is not None else None
        return None if self.data is None else str(self.data)


class DataVersionChanged(_HubEventBase):
    kind: Literal["DataVersionChanged"] = "DataVersionChanged"

    @property
    def version(self) -> str | None:
        if isinstance(self.data, dict):
            value = self.data.get("version", self.data.get("Version"))
            return None if value is None else str(value)
        return None if self.data is None else str(self.data)


class AdminConnected(_HubEventBase):
    kind: Literal["AdminConnected"] = "AdminConnected"


class AdminDisconnected(_HubEventBase):
    kind: Literal["AdminDisconnected"] = "AdminDisconnected"


class CurrentAdmins(_HubEventBase):
    kind: Literal["CurrentAdmins"] = "CurrentAdmins"


class ConnectionInfo(_HubEventBase):
    kind: Literal["ConnectionInfo"] = "ConnectionInfo"


HubEvent = Annotated[
    UserChanged
    | RunnerChanged
    | AdminChanged
    | PublicCaseChanged
    | SystemStatusChanged
    | DataVersionChanged
    | AdminConnected
    | AdminDisconnected
    | CurrentAdmins
    | ConnectionInfo,
    Field(discriminator="kind"),
]

_HUB_EVENT_ADAPTER: TypeAdapter[HubEvent] = TypeAdapter(HubEvent)


def parse_hub_event(target: str, arguments: list[Any] | tuple[Any, ...]) -> HubEvent | None:
    """Build a typed event from a hub invocation; unknown targets yield None."""
    if len(arguments) == 0:
        data: Any = None
    elif len(arguments) == 1:
        data = arguments[0]
    else:
        data = list(arguments)
    try:
        return _HUB_EVENT_ADAPTER.validate_python({"kind": target, "data": data})
    except ValidationError:
        return None


@dataclass(slots=True)
class QueuedEvent:
    type: ChangeType
    payload: Any
    enqueued_at: float = field(default_factory=time.time)


class LoginResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    success: bool = True
    token: str = Field(validation_alias=AliasChoices("token", "accessToken"))
    refresh_token: str | None = Field(default=None, validation_alias=AliasChoices("refreshToken", "refresh_token"))
    expires_in: int | None = Field(default=None, validation_alias=AliasChoices("expiresIn", "expires_in"))
    user: UserRecord


class VerifyResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    user: UserRecord | None = None


class RefreshResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    success: bool = False
    token: str | None = Field(default=None, validation_alias=AliasChoices("token", "accessToken"))
    refresh_token: str | None = Field(default=None, validation_alias=AliasChoices("refreshToken", "refresh_token"))
    user: UserRecord | None = None


class DataVersion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: str

    @classmethod
    def from_payload(cls, payload: Any) -> DataVersion:
        if isinstance(payload, dict) and payload.get("version") is not None:
            return cls(version=str(payload["version"]))
        raise ValueError("data-version payload is missing 'version'")


__all__ = [
    "AdminChanged",
    "AdminConnected",
    "AdminDisconnected",
    "ChangeType",
    "ConnectionInfo",
    "ConnectionState",
    "ConnectionStatus",
    "CurrentAdmins",
    "DataVersion",
    "DataVersionChanged",
    "HubEvent",
    "HubEventKind",
    "LoginResult",
    "PublicCaseChanged",
    "QueuedEvent",
    "RefreshResult",
    "RunnerChanged",
    "Session",
    "SignalName",
    "SystemStatusChanged",
    "UserChanged",
    "UserRecord",
    "VerifyResult",
    "parse_hub_event",
]
