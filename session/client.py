from __future__ import annotations

import struct
from typing import Optional, Tuple

import websocket

from common.logging_setup import get_logger
from common.types import MatchReport
from common.utils import frame_id
from session.framing import DEFAULT_CHUNK_SIZE, MessageAssembler, iter_chunks
from session.protocol import MatchRequest, decode_report
from session.transport import TransportClosed


log = get_logger("client")


class RecognitionClient:
    """
    Blocking client for the /ws recognition session.

        with RecognitionClient("ws://localhost:8080/ws", api_key="k") as c:
            report = c.recognize(jpeg_bytes, original_size=(1920, 1080))
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 30.0,
    ):
        self.url = url
        self.api_key = api_key
        self.chunk_size = int(chunk_size)
        self.timeout = float(timeout)
        self.ws: Optional[websocket.WebSocket] = None
        self._assembler = MessageAssembler()

    def connect(self) -> "RecognitionClient":
        headers = [f"X-API-KEY: {self.api_key}"] if self.api_key else []
        self.ws = websocket.create_connection(self.url, header=headers, timeout=self.timeout)
        log.info("connected", extra={"extra": {"url": self.url}})
        return self

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.ws is not None:
            self.ws.close(status=code, reason=reason.encode("utf-8"))
            self.ws = None

    def __enter__(self) -> "RecognitionClient":
        return self.connect()

    def __exit__(self, *exc) -> None:
        self.close()

    def _require(self) -> websocket.WebSocket:
        if self.ws is None:
            raise TransportClosed("client is not connected")
        return self.ws

    def send_request(self, request: MatchRequest) -> None:
        ws = self._require()
        for chunk in iter_chunks(request.to_json(), self.chunk_size):
            ws.send_binary(chunk)

    def receive_report(self) -> MatchReport:
        ws = self._require()
        while True:
            opcode, data = ws.recv_data()
            if opcode == websocket.ABNF.OPCODE_CLOSE:
                code, reason = _parse_close(data)
                ws.shutdown()
                self.ws = None
                raise TransportClosed(f"server closed the session ({code} {reason})")
            if opcode != websocket.ABNF.OPCODE_BINARY:
                continue
            full = self._assembler.feed(data)
            if full is not None:
                return decode_report(full)

    def recognize(
        self,
        image: bytes,
        *,
        original_size: Optional[Tuple[int, int]] = None,
        request_id: Optional[str] = None,
        is_grayscale: bool = False,
        is_low_resolution: bool = False,
        has_roi: bool = False,
        has_gaussian_blur: bool = False,
    ) -> MatchReport:
        """Send one frame and wait for its report."""
        ow, oh = original_size or (0, 0)
        req = MatchRequest(
            id=request_id or frame_id(),
            image=image,
            original_width=int(ow),
            original_height=int(oh),
            is_grayscale=is_grayscale,
            is_low_resolution=is_low_resolution,
            has_roi=has_roi,
            has_gaussian_blur=has_gaussian_blur,
        )
        self.send_request(req)
        return self.receive_report()


def _parse_close(data: bytes) -> Tuple[Optional[int], str]:
    if len(data) < 2:
        return None, ""
    (code,) = struct.unpack("!H", data[:2])
    return code, data[2:].decode("utf-8", errors="replace")
