from __future__ import annotations

import asyncio
import enum
import uuid
from typing import Awaitable, Callable, Optional, Union

from catalog.providers import CatalogProvider, load_snapshot
from catalog.snapshot import TargetCatalog
from common.errors import CatalogUnavailable, DecodeError
from common.logging_setup import get_logger
from common.types import MatchReport
from common.utils import RunningStats, Stopwatch
from recognition.engine import RecognitionEngine
from session.framing import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_MESSAGE, CloseFrame, MessageAssembler, iter_chunks
from session.protocol import MatchRequest, encode_report
from session.transport import Transport, TransportClosed, sendable_close_code


log = get_logger("session")

CLOSE_NORMAL = 1000
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_INTERNAL_ERROR = 1011

EngineFactory = Callable[[TargetCatalog], RecognitionEngine]
Runner = Callable[..., Awaitable]


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    SERVING = "serving"
    CLOSING = "closing"
    CLOSED = "closed"


class RecognitionSession:
    """
    One connection: load a catalog snapshot, then answer query frames strictly
    in order (receive -> process -> send) until the peer closes.

    Processing runs through `runner` (a worker thread by default) so other
    sessions on the same event loop keep going; within a session nothing
    overlaps, which keeps responses in request order.
    """

    def __init__(
        self,
        transport: Transport,
        provider: CatalogProvider,
        engine_factory: EngineFactory,
        *,
        api_key: Optional[str] = None,
        catalog_name: str = "catalog",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_message_size: int = DEFAULT_MAX_MESSAGE,
        runner: Optional[Runner] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.transport = transport
        self.provider = provider
        self.engine_factory = engine_factory
        self.api_key = api_key
        self.catalog_name = catalog_name
        self.chunk_size = int(chunk_size)
        self.runner: Runner = runner or asyncio.to_thread
        self.session_id = uuid.uuid4().hex[:12]

        self.state = SessionState.CONNECTING
        self.catalog: Optional[TargetCatalog] = None
        self.engine: Optional[RecognitionEngine] = None
        self.requests_served = 0
        self.latency_ms = RunningStats()
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._assembler = MessageAssembler(max_message_size)

    def _extra(self, **kw) -> dict:
        return {"extra": {"session": self.session_id, **kw}}

    # -----------------------------
    # Framing
    # -----------------------------

    async def receive_message(self) -> Union[bytes, CloseFrame]:
        """Next full logical message, or the close frame that ended the stream."""
        while True:
            ev = await self.transport.receive()
            if isinstance(ev, CloseFrame):
                if self._assembler.pending:
                    log.warning("partial message discarded on close", extra=self._extra())
                    self._assembler.reset()
                return ev
            full = self._assembler.feed(ev.data)
            if full is not None:
                return full

    async def send_message(self, payload: bytes) -> None:
        for chunk in iter_chunks(payload, self.chunk_size):
            await self.transport.send(chunk)

    # -----------------------------
    # Lifecycle
    # -----------------------------

    async def initialize(self) -> None:
        """Load the snapshot and build the engine; raises CatalogUnavailable."""
        self.state = SessionState.INITIALIZING
        self.catalog = await self.runner(load_snapshot, self.provider, self.api_key, self.catalog_name)
        self.engine = self.engine_factory(self.catalog)
        log.info("catalog loaded", extra=self._extra(targets=len(self.catalog)))

    async def process(self, payload: bytes) -> MatchReport:
        """
        Decode one request and recognize it.

        A malformed envelope raises DecodeError and ends the session; image bytes
        that fail to decode only cost this request an empty report.
        """
        if self.engine is None:
            raise RuntimeError("session is not initialized")
        request = MatchRequest.from_json(payload)
        with Stopwatch() as sw:
            try:
                report = await self.runner(
                    self.engine.recognize,
                    request.image,
                    original_size=request.original_size,
                    applied=request.applied(),
                    request_id=request.id,
                )
            except DecodeError as e:
                log.warning("image decode failed", extra=self._extra(id=request.id, error=str(e)))
                report = MatchReport.from_results([], request.id)
        self.latency_ms.add(sw.elapsed_ms)
        log.info(
            "request served",
            extra=self._extra(id=request.id, latency_ms=round(sw.elapsed_ms, 2), matches=len(report.results)),
        )
        return report

    async def serve(self) -> CloseFrame:
        self.state = SessionState.SERVING
        while True:
            msg = await self.receive_message()
            if isinstance(msg, CloseFrame):
                return msg
            report = await self.process(msg)
            await self.send_message(encode_report(report))
            self.requests_served += 1

    async def run(self) -> None:
        log.info("session accepted", extra=self._extra())
        code, reason = CLOSE_NORMAL, ""
        peer_gone = False
        try:
            await self.initialize()
            received = await self.serve()
            code, reason = sendable_close_code(received.code), received.reason
        except CatalogUnavailable as e:
            log.error("catalog unavailable", extra=self._extra(error=str(e)))
            code, reason = CLOSE_INTERNAL_ERROR, "catalog unavailable"
        except DecodeError as e:
            log.error("request decode failed", extra=self._extra(error=str(e)))
            code, reason = CLOSE_INVALID_PAYLOAD, "invalid request"
        except TransportClosed as e:
            log.warning("transport closed", extra=self._extra(error=str(e)))
            peer_gone = True
        except Exception as e:
            log.exception("session failed", extra=self._extra(error=str(e)))
            code, reason = CLOSE_INTERNAL_ERROR, "internal error"
        finally:
            self.state = SessionState.CLOSING
            self.close_code, self.close_reason = code, reason
            if not peer_gone:
                await self.transport.close(code, reason)
            self.engine = None
            self.catalog = None
            self.state = SessionState.CLOSED
            log.info(
                "session closed",
                extra=self._extra(
                    code=code,
                    reason=reason,
                    requests=self.requests_served,
                    mean_latency_ms=round(self.latency_ms.mean, 2),
                ),
            )
