"""
Unit tests for the blocking session client
"""

import json
import struct
import pytest
import websocket
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import MatchReport
from session import client as client_mod
from session.client import RecognitionClient
from session.framing import MessageAssembler, split_message
from session.protocol import MatchRequest, encode_report
from session.transport import TransportClosed


class _FakeWS:
    """Records binary sends; replays queued (opcode, data) frames."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = None

    def send_binary(self, data):
        self.sent.append(data)

    def recv_data(self):
        return self.frames.pop(0)

    def close(self, status=1000, reason=b""):
        self.closed = (status, reason)

    def shutdown(self):
        self.closed = ("shutdown", b"")


def _connect(monkeypatch, frames):
    fake = _FakeWS(frames)
    seen = {}

    def create_connection(url, header=None, timeout=None):
        seen.update(url=url, header=header, timeout=timeout)
        return fake

    monkeypatch.setattr(client_mod.websocket, "create_connection", create_connection)
    return fake, seen


class TestClient:
    """Chunked request/response over websocket-client"""

    def test_recognize_roundtrip(self, monkeypatch):
        reply = encode_report(MatchReport(request_id="q1"))
        frames = [(websocket.ABNF.OPCODE_BINARY, c) for c in split_message(reply, 8)]
        fake, seen = _connect(monkeypatch, frames)

        with RecognitionClient("ws://host/ws", api_key="k", chunk_size=16) as c:
            report = c.recognize(b"\xff\xd8jpeg", original_size=(640, 480), request_id="q1", is_grayscale=True)

        assert seen["url"] == "ws://host/ws"
        assert seen["header"] == ["X-API-KEY: k"]
        assert report.request_id == "q1" and not report.has_matches
        assert fake.closed == (1000, b"")

        assert all(len(chunk) <= 17 for chunk in fake.sent)
        asm = MessageAssembler()
        req = [asm.feed(chunk) for chunk in fake.sent][-1]
        parsed = MatchRequest.from_json(req)
        assert parsed.image == b"\xff\xd8jpeg"
        assert parsed.original_size == (640, 480)
        assert parsed.is_grayscale

    def test_server_close_raises(self, monkeypatch):
        frames = [(websocket.ABNF.OPCODE_CLOSE, struct.pack("!H", 1011) + b"catalog unavailable")]
        _connect(monkeypatch, frames)
        c = RecognitionClient("ws://host/ws").connect()
        with pytest.raises(TransportClosed) as ei:
            c.recognize(b"x", request_id="q")
        assert "1011" in str(ei.value)

    def test_not_connected(self):
        with pytest.raises(TransportClosed):
            RecognitionClient("ws://host/ws").receive_report()

    def test_generated_request_id(self, monkeypatch):
        reply = json.dumps({"hasMatches": False, "matches": []}).encode()
        fake, _ = _connect(monkeypatch, [(websocket.ABNF.OPCODE_BINARY, c) for c in split_message(reply)])
        c = RecognitionClient("ws://host/ws").connect()
        c.recognize(b"x")
        sent = MatchRequest.from_json(MessageAssembler().feed(fake.sent[0]))
        assert sent.id.startswith("frame_")
