"""Configuration models for the sync client."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_API_BASE_URL = "https://241runners-api.azurewebsites.net/api"
DEFAULT_HUB_URL = "https://241runners-api.azurewebsites.net/adminHub"
DEFAULT_RECONNECT_SCHEDULE = (0.0, 2.0, 10.0, 30.0)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Fixed delay sequence applied to successive reconnect attempts."""

    delays: tuple[float, ...] = DEFAULT_RECONNECT_SCHEDULE

    def __post_init__(self) -> None:
        if any(delay < 0 for delay in self.delays):
            raise ValueError("backoff delays must be non-negative")

    @classmethod
    def from_millis(cls, delays_ms: Iterable[float]) -> BackoffPolicy:
        return cls(tuple(float(delay) / 1000.0 for delay in delays_ms))

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    def delay_for(self, attempt: int) -> float | None:
        """Delay before reconnect ``attempt`` (0-based), or None once exhausted."""
        if attempt < 0 or attempt >= len(self.delays):
            return None
        return self.delays[attempt]


def outer_retry_delay(retry_count: int, base_delay: float) -> float:
    """Delay before the next full connect attempt after ``retry_count`` failures."""
    return base_delay * max(retry_count, 0)


class SyncConfig(BaseModel):
    """Recognised options for the session and realtime layer.

    Durations are seconds. The camelCase names used by the dashboard's
    ``config.json`` are accepted as aliases.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        validation_alias=AliasChoices("api_base_url", "apiBaseUrl", "API_BASE_URL"),
    )
    hub_url: str = Field(default=DEFAULT_HUB_URL, validation_alias=AliasChoices("hub_url", "hubUrl"))
    data_version_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("data_version_url", "dataVersionUrl"),
    )
    privileged_role: str = Field(default="admin", validation_alias=AliasChoices("privileged_role", "privilegedRole"))

    reconnect_schedule: BackoffPolicy = Field(
        default_factory=BackoffPolicy,
        validation_alias=AliasChoices("reconnect_schedule", "reconnectSchedule"),
    )
    max_outer_retries: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("max_outer_retries", "maxOuterRetries"),
    )
    outer_retry_base_delay: float = Field(
        default=2.0,
        ge=0.0,
        validation_alias=AliasChoices("outer_retry_base_delay", "outerRetryBaseDelay"),
    )
    debounce_delay: float = Field(
        default=0.5,
        ge=0.0,
        validation_alias=AliasChoices("debounce_delay", "debounceDelay"),
    )
    polling_interval: float = Field(
        default=30.0,
        gt=0.0,
        validation_alias=AliasChoices("polling_interval", "pollingInterval"),
    )
    token_refresh_lead_time: float = Field(
        default=300.0,
        ge=0.0,
        validation_alias=AliasChoices("token_refresh_lead_time", "tokenRefreshLeadTime"),
    )
    session_ttl: float = Field(default=3600.0, gt=0.0, validation_alias=AliasChoices("session_ttl", "sessionTtl"))
    request_timeout: float = Field(
        default=10.0,
        gt=0.0,
        validation_alias=AliasChoices("request_timeout", "requestTimeout"),
    )
    client_header: str = Field(default="241RA-Admin/1.0", validation_alias=AliasChoices("client_header", "clientHeader"))

    @field_validator("reconnect_schedule", mode="before")
    @classmethod
    def _coerce_schedule(cls, value: Any) -> Any:
        if isinstance(value, BackoffPolicy):
            return value
        if isinstance(value, (list, tuple)):
            return BackoffPolicy(tuple(float(item) for item in value))
        return value

    @field_validator("api_base_url", "hub_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def resolved_data_version_url(self) -> str:
        if self.data_version_url:
            return self.data_version_url
        base = httpx.URL(self.api_base_url)
        return f"{base.scheme}://{base.netloc.decode('ascii')}/api/data-version"

    def auth_url(self, action: str) -> str:
        return f"{self.api_base_url}/Auth/{action}"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> SyncConfig:
        return cls.model_validate(dict(payload))

    @classmethod
    def from_file(cls, path: str | Path) -> SyncConfig:
        raw = Path(path).read_text(encoding="utf-8")
        payload = json.loads(raw)
        if not isinstance(payload, Mapping):
            raise ValueError(f"Config file {path} must contain a JSON object")
        return cls.from_mapping(payload)


__all__ = [
    "DEFAULT_API_BASE_URL",
    "DEFAULT_HUB_URL",
    "DEFAULT_RECONNECT_SCHEDULE",
    "BackoffPolicy",
    "SyncConfig",
    "outer_retry_delay",
]
