from __future__ import annotations

from collections import deque
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from common.errors import RecognitionError
from session.framing import DEFAULT_CHUNK_SIZE, CloseFrame, DataFrame, MessageAssembler, iter_chunks

Event = Union[DataFrame, CloseFrame]

# Close codes that describe a connection state and may not be sent in a close frame.
RESERVED_CLOSE_CODES = (1005, 1006, 1015)


class TransportClosed(RecognitionError):
    """The peer is gone; nothing more can be sent."""
    pass


class Transport(Protocol):
    """Duplex message transport a RecognitionSession runs over."""

    async def receive(self) -> Event:
        ...

    async def send(self, data: bytes) -> None:
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


def sendable_close_code(code: Optional[int]) -> int:
    if code is None or code in RESERVED_CLOSE_CODES:
        return 1000
    return int(code)


class InMemoryTransport:
    """
    Scripted transport: yields the queued inbound events in order, records
    everything sent. When the script runs out it behaves like a peer that
    closed normally.
    """

    def __init__(self, inbound: Sequence[Event] = ()):
        self._inbound: "deque[Event]" = deque(inbound)
        self.sent: List[bytes] = []
        self.closed: Optional[Tuple[int, str]] = None

    @classmethod
    def with_messages(
        cls,
        payloads: Sequence[bytes],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        close: Optional[CloseFrame] = None,
    ) -> "InMemoryTransport":
        events: List[Event] = []
        for p in payloads:
            events.extend(DataFrame(c) for c in iter_chunks(p, chunk_size))
        if close is not None:
            events.append(close)
        return cls(events)

    async def receive(self) -> Event:
        if not self._inbound:
            return CloseFrame()
        return self._inbound.popleft()

    async def send(self, data: bytes) -> None:
        if self.closed is not None:
            raise TransportClosed("send after close")
        self.sent.append(bytes(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (int(code), reason)

    def sent_messages(self) -> List[bytes]:
        """Reassembled logical messages sent so far."""
        asm = MessageAssembler()
        out: List[bytes] = []
        for chunk in self.sent:
            full = asm.feed(chunk)
            if full is not None:
                out.append(full)
        return out
