from __future__ import annotations
"""
Chunk framing for the session protocol.

Every physical WebSocket binary message is one header byte followed by at most
`chunk_size` payload bytes. Header bit 0 marks the final chunk of a logical
message; the other bits must be zero. An empty logical message travels as a
single final chunk without payload.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from common.errors import DecodeError

DEFAULT_CHUNK_SIZE = 4096
DEFAULT_MAX_MESSAGE = 32 * 1024 * 1024

FLAG_FINAL = 0x01


# -----------------------------
# Transport events
# -----------------------------

@dataclass(frozen=True, slots=True)
class DataFrame:
    """One physical binary message as received from the transport."""
    data: bytes


@dataclass(frozen=True, slots=True)
class CloseFrame:
    """Close control frame; code/reason are echoed back by the session."""
    code: int = 1000
    reason: str = ""


# -----------------------------
# Chunks
# -----------------------------

def encode_chunk(payload: bytes, final: bool) -> bytes:
    return bytes([FLAG_FINAL if final else 0]) + bytes(payload)


def decode_chunk(message: bytes) -> Tuple[bytes, bool]:
    if not message:
        raise DecodeError("empty chunk (missing header byte)")
    header = message[0]
    if header & ~FLAG_FINAL:
        raise DecodeError(f"unknown chunk header bits 0x{header:02x}")
    return bytes(message[1:]), bool(header & FLAG_FINAL)


def iter_chunks(payload: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Physical messages for one logical payload; only the last is marked final."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    n = len(payload)
    if n == 0:
        yield encode_chunk(b"", True)
        return
    for off in range(0, n, chunk_size):
        end = min(off + chunk_size, n)
        yield encode_chunk(payload[off:end], end >= n)


def split_message(payload: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[bytes]:
    return list(iter_chunks(payload, chunk_size))


class MessageAssembler:
    """
    Reassembles chunks in arrival order.

        asm = MessageAssembler()
        for msg in messages:
            full = asm.feed(msg)
            if full is not None:
                handle(full)
    """

    def __init__(self, max_message_size: int = DEFAULT_MAX_MESSAGE):
        self.max_message_size = int(max_message_size)
        self._buf = bytearray()
        self._chunks = 0

    @property
    def pending(self) -> bool:
        return self._chunks > 0

    def reset(self) -> None:
        self._buf = bytearray()
        self._chunks = 0

    def feed(self, message: bytes) -> Optional[bytes]:
        payload, final = decode_chunk(message)
        if len(self._buf) + len(payload) > self.max_message_size:
            self.reset()
            raise DecodeError(f"message exceeds {self.max_message_size} bytes")
        self._buf.extend(payload)
        self._chunks += 1
        if not final:
            return None
        out = bytes(self._buf)
        self.reset()
        return out
