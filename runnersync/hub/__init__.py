"""Hub transport: wire framing and the WebSocket client."""

from .connection import HubConnection, HubFactory, WebSocketHubConnection
from .protocol import HANDSHAKE_REQUEST, RECORD_SEPARATOR, decode_frames, encode_frame

__all__ = [
    "HANDSHAKE_REQUEST",
    "RECORD_SEPARATOR",
    "HubConnection",
    "HubFactory",
    "WebSocketHubConnection",
    "decode_frames",
    "encode_frame",
]
