from __future__ import annotations

from typing import Any

SESSION_EXPIRED_MESSAGE = "Session expired. Please log in again."


class SyncError(Exception):
    """Base class for every error raised by runnersync."""

    code = "sync_error"

    def __init__(self, detail: str | None = None, *, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code}
        if self.detail:
            payload["detail"] = self.detail
        if self.extra:
            payload.update(self.extra)
        return payload


class InvalidCredentialsError(SyncError):
    code = "invalid_credentials"


class SessionExpiredError(SyncError):
    code = "session_expired"

    def __init__(self, detail: str = SESSION_EXPIRED_MESSAGE) -> None:
        super().__init__(detail)


class NetworkError(SyncError):
    code = "network_error"


class RequestError(SyncError):
    code = "request_failed"

    def __init__(self, status_code: int, detail: str | None = None) -> None:
        super().__init__(detail or f"HTTP {status_code}", extra={"status": status_code})
        self.status_code = status_code


class HubConnectionError(SyncError):
    code = "hub_connection_failed"


class HubProtocolError(HubConnectionError):
    code = "hub_protocol_error"


class RetriesExhaustedError(SyncError):
    code = "retries_exhausted"

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Hub connection failed after {attempts} attempts; polling fallback engaged.",
            extra={"attempts": attempts},
        )
        self.attempts = attempts


__all__ = [
    "SESSION_EXPIRED_MESSAGE",
    "HubConnectionError",
    "HubProtocolError",
    "InvalidCredentialsError",
    "NetworkError",
    "RequestError",
    "RetriesExhaustedError",
    "SessionExpiredError",
    "SyncError",
]
