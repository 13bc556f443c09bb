"""Framing for the JSON hub protocol.

Every message is a JSON object terminated by the ``\\x1e`` record separator.
A single WebSocket text frame may carry several records.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from ..errors import HubProtocolError

RECORD_SEPARATOR = "\x1e"

INVOCATION = 1
STREAM_ITEM = 2
COMPLETION = 3
STREAM_INVOCATION = 4
CANCEL_INVOCATION = 5
PING = 6
CLOSE = 7

PROTOCOL_NAME = "json"
PROTOCOL_VERSION = 1


def encode_frame(message: Mapping[str, Any]) -> str:
    return json.dumps(dict(message), separators=(",", ":")) + RECORD_SEPARATOR


HANDSHAKE_REQUEST = encode_frame({"protocol": PROTOCOL_NAME, "version": PROTOCOL_VERSION})


def decode_frames(raw: str | bytes) -> list[dict[str, Any]]:
    """Split ``raw`` into records and parse each one as a JSON object."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HubProtocolError("Hub frame is not valid UTF-8") from exc
    messages: list[dict[str, Any]] = []
    for record in raw.split(RECORD_SEPARATOR):
        if not record:
            continue
        try:
            message = json.loads(record)
        except json.JSONDecodeError as exc:
            raise HubProtocolError(f"Malformed hub record: {record[:64]!r}") from exc
        if not isinstance(message, dict):
            raise HubProtocolError("Hub record is not a JSON object")
        messages.append(message)
    return messages


def parse_handshake_response(raw: str | bytes) -> list[dict[str, Any]]:
    """Validate the handshake reply; returns any messages that followed it."""
    messages = decode_frames(raw)
    if not messages:
        raise HubProtocolError("Empty handshake response")
    handshake, rest = messages[0], messages[1:]
    if "type" in handshake:
        raise HubProtocolError("Expected a handshake response before hub messages")
    error = handshake.get("error")
    if error:
        raise HubProtocolError(f"Hub rejected handshake: {error}")
    return rest


def invocation(target: str, arguments: Sequence[Any], invocation_id: str | None = None) -> str:
    message: dict[str, Any] = {"type": INVOCATION, "target": target, "arguments": list(arguments)}
    if invocation_id is not None:
        message["invocationId"] = invocation_id
    return encode_frame(message)


def completion(invocation_id: str, *, result: Any = None, error: str | None = None) -> str:
    message: dict[str, Any] = {"type": COMPLETION, "invocationId": invocation_id}
    if error is not None:
        message["error"] = error
    else:
        message["result"] = result
    return encode_frame(message)


def ping() -> str:
    return encode_frame({"type": PING})


def close(error: str | None = None, *, allow_reconnect: bool = False) -> str:
    message: dict[str, Any] = {"type": CLOSE}
    if error is not None:
        message["error"] = error
    if allow_reconnect:
        message["allowReconnect"] = True
    return encode_frame(message)


__all__ = [
    "CANCEL_INVOCATION",
    "CLOSE",
    "COMPLETION",
    "HANDSHAKE_REQUEST",
    "INVOCATION",
    "PING",
    "RECORD_SEPARATOR",
    "STREAM_INVOCATION",
    "STREAM_ITEM",
    "close",
    "completion",
    "decode_frames",
    "encode_frame",
    "invocation",
    "parse_handshake_response",
]
