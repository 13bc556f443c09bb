import json

import pytest

from runnersync.errors import HubProtocolError
from runnersync.hub import protocol
from runnersync.hub.connection import websocket_url


def test_handshake_request_is_json_protocol_v1():
    assert protocol.HANDSHAKE_REQUEST == '{"protocol":"json","version":1}\x1e'


def test_decode_frames_splits_records():
    raw = protocol.ping() + protocol.invocation("UserChanged", ["created", {"id": 1}])

    messages = protocol.decode_frames(raw)

    assert messages == [
        {"type": protocol.PING},
        {"type": protocol.INVOCATION, "target": "UserChanged", "arguments": ["created", {"id": 1}]},
    ]


def test_decode_frames_accepts_bytes():
    assert protocol.decode_frames(b'{"type":6}\x1e') == [{"type": 6}]


@pytest.mark.parametrize("raw", ['{"type":\x1e', "[1,2]\x1e", b"\xff\xfe\x1e"])
def test_decode_frames_rejects_malformed_records(raw):
    with pytest.raises(HubProtocolError):
        protocol.decode_frames(raw)


def test_handshake_response_returns_trailing_messages():
    assert protocol.parse_handshake_response("{}\x1e") == []
    assert protocol.parse_handshake_response('{}\x1e{"type":6}\x1e') == [{"type": 6}]


@pytest.mark.parametrize("raw", ['{"error":"Requested protocol is not available"}\x1e', "", '{"type":6}\x1e'])
def test_handshake_response_errors(raw):
    with pytest.raises(HubProtocolError):
        protocol.parse_handshake_response(raw)


def test_invocation_and_completion_frames():
    frame = protocol.invocation("BroadcastUserChange", ("update", {"id": 3}), "7")
    assert json.loads(frame.rstrip(protocol.RECORD_SEPARATOR)) == {
        "type": 1,
        "target": "BroadcastUserChange",
        "arguments": ["update", {"id": 3}],
        "invocationId": "7",
    }

    failed = protocol.decode_frames(protocol.completion("7", error="nope"))[0]
    assert failed == {"type": 3, "invocationId": "7", "error": "nope"}

    closing = protocol.decode_frames(protocol.close("bye", allow_reconnect=True))[0]
    assert closing == {"type": 7, "error": "bye", "allowReconnect": True}


def test_websocket_url_switches_scheme_and_adds_tokens():
    url = websocket_url("https://api.test/adminHub", "conn-token", "abc")

    assert url == "wss://api.test/adminHub?id=conn-token&access_token=abc"
    assert websocket_url("http://localhost:5000/adminHub", None, None) == "ws://localhost:5000/adminHub"
