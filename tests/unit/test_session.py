"""
Unit tests for the recognition session state machine
"""

import asyncio
import json
import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from catalog.providers import InMemoryCatalogProvider
from common.errors import CatalogUnavailable
from recognition.engine import RecognitionEngine
from session.framing import CloseFrame, DataFrame, encode_chunk
from session.protocol import MatchRequest, decode_report
from session.session import RecognitionSession, SessionState
from session.transport import InMemoryTransport, TransportClosed


def _png(seed=0, w=96, h=64):
    img = np.random.default_rng(seed).integers(0, 255, (h, w, 3), dtype=np.uint8)
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def _request(rid, image=None):
    return MatchRequest(id=rid, image=image if image is not None else _png(), original_width=96, original_height=64).to_json()


class _FailingProvider:
    def fetch(self, api_key=None):
        raise CatalogUnavailable("backend down")


class _Factory:
    def __init__(self):
        self.calls = 0

    def __call__(self, catalog):
        self.calls += 1
        return RecognitionEngine(catalog)


def _run(transport, provider=None, factory=None, **kw):
    s = RecognitionSession(transport, provider or InMemoryCatalogProvider(), factory or _Factory(), **kw)
    asyncio.run(s.run())
    return s


class TestServing:
    """Receive -> process -> send loop"""

    def test_empty_catalog_reports_no_matches(self):
        t = InMemoryTransport.with_messages([_request("r1")], close=CloseFrame(1000, "done"))
        s = _run(t)
        msgs = t.sent_messages()
        assert len(msgs) == 1
        d = json.loads(msgs[0])
        assert d == {"id": "r1", "hasMatches": False, "matches": []}
        assert s.requests_served == 1

    def test_responses_keep_request_order(self):
        ids = ["r1", "r2", "r3", "r4"]
        t = InMemoryTransport.with_messages([_request(i) for i in ids])
        _run(t)
        assert [decode_report(m).request_id for m in t.sent_messages()] == ids

    def test_small_chunks_both_directions(self):
        t = InMemoryTransport.with_messages([_request("big")], chunk_size=64)
        _run(t, chunk_size=64)
        assert len(t.sent) > 1
        assert all(len(c) <= 65 for c in t.sent)
        assert decode_report(t.sent_messages()[0]).request_id == "big"

    def test_no_unsolicited_messages(self):
        t = InMemoryTransport([CloseFrame(1000, "")])
        s = _run(t)
        assert t.sent == []
        assert s.requests_served == 0

    def test_undecodable_image_costs_only_that_request(self):
        t = InMemoryTransport.with_messages([_request("bad", image=b"garbage"), _request("good")])
        s = _run(t)
        reports = [decode_report(m) for m in t.sent_messages()]
        assert [r.request_id for r in reports] == ["bad", "good"]
        assert not reports[0].has_matches
        assert s.close_code == 1000


class TestClosing:
    """Close handshake and failure paths"""

    def test_close_status_is_echoed(self):
        t = InMemoryTransport.with_messages([_request("r1")], close=CloseFrame(4001, "client bye"))
        s = _run(t)
        assert t.closed == (4001, "client bye")
        assert s.state == SessionState.CLOSED
        assert s.catalog is None and s.engine is None

    def test_reserved_close_code_is_not_echoed(self):
        t = InMemoryTransport([CloseFrame(1005, "")])
        _run(t)
        assert t.closed == (1000, "")

    def test_partial_message_dropped_on_close(self):
        t = InMemoryTransport([DataFrame(encode_chunk(b'{"id": "x"', False)), CloseFrame(1000, "")])
        _run(t)
        assert t.sent == []
        assert t.closed == (1000, "")

    def test_catalog_failure_never_serves(self):
        factory = _Factory()
        t = InMemoryTransport.with_messages([_request("r1")])
        s = _run(t, provider=_FailingProvider(), factory=factory)
        assert factory.calls == 0
        assert t.sent == []
        assert t.closed == (1011, "catalog unavailable")
        assert s.state == SessionState.CLOSED

    def test_envelope_decode_failure_ends_session(self):
        t = InMemoryTransport.with_messages([b"{not json", _request("r2")])
        s = _run(t)
        assert t.sent == []
        assert t.closed[0] == 1007
        assert s.requests_served == 0

    def test_non_finite_size_is_a_malformed_envelope(self):
        t = InMemoryTransport.with_messages([b'{"id": "r1", "image": "", "originalWidth": NaN}'])
        _run(t)
        assert t.sent == []
        assert t.closed[0] == 1007

    def test_bad_chunk_header_ends_session(self):
        t = InMemoryTransport([DataFrame(b"\xff\x00")])
        _run(t)
        assert t.closed[0] == 1007

    def test_peer_gone_during_send(self):
        class _GoneTransport(InMemoryTransport):
            async def send(self, data):
                raise TransportClosed("gone")

        t = _GoneTransport.with_messages([_request("r1")])
        s = _run(t)
        assert t.closed is None
        assert s.state == SessionState.CLOSED

    def test_api_key_is_passed_to_provider(self):
        provider = InMemoryCatalogProvider(by_key={"k1": []})
        t = InMemoryTransport([CloseFrame(1000, "")])
        _run(t, provider=provider, api_key="nope")
        assert t.closed[0] == 1011
        t2 = InMemoryTransport([CloseFrame(1000, "")])
        _run(t2, provider=provider, api_key="k1")
        assert t2.closed == (1000, "")
