from __future__ import annotations
"""
Binary catalog blob.

Layout (little-endian):

    magic   b"TCAT"
    u16     version (1)
    u32     record count
    per record:
        u32 + bytes   id (UTF-8)
        f64 f64       reference width / height units
        u32 u32       reference working-frame width / height
        u8            descriptor dtype code (1=float32, 2=uint8)
        u32 u32       descriptor rows / cols
        u32 + bytes   reference image (encoded, may be empty)
        u32 + bytes   keypoints, rows * 28 bytes (KEYPOINT_DTYPE)
        u32 + bytes   descriptors, rows * cols * itemsize bytes

Descriptor and keypoint bytes are written and read verbatim, so a round trip
is byte-exact.
"""

import os
import struct
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np

from common.errors import CodecIntegrityError
from common.logging_setup import get_logger
from common.types import KEYPOINT_DTYPE, FingerprintSet, TargetRecord


log = get_logger("catalog.codec")

MAGIC = b"TCAT"
VERSION = 1
FILE_EXTENSION = ".bin"
CONTENT_TYPE = "application/octet-stream"

_HEADER = struct.Struct("<4sHI")
_LEN = struct.Struct("<I")
_RECORD_FIXED = struct.Struct("<ddIIBII")

_DTYPE_CODES = {np.dtype(np.float32): 1, np.dtype(np.uint8): 2}
_CODE_DTYPES = {v: k for k, v in _DTYPE_CODES.items()}


# -----------------------------
# Encoding
# -----------------------------

def _put_block(buf: bytearray, data: bytes) -> None:
    buf.extend(_LEN.pack(len(data)))
    buf.extend(data)


def _encode_record(buf: bytearray, rec: TargetRecord) -> None:
    fp = rec.fingerprint
    dtype = np.dtype(fp.descriptors.dtype)
    if dtype not in _DTYPE_CODES:
        raise CodecIntegrityError(f"target {rec.id!r}: unsupported descriptor dtype {dtype}")
    rows, cols = fp.descriptors.shape
    w, h = rec.reference_frame_size

    _put_block(buf, rec.id.encode("utf-8"))
    buf.extend(
        _RECORD_FIXED.pack(
            float(rec.reference_width_units),
            float(rec.reference_height_units),
            int(w),
            int(h),
            _DTYPE_CODES[dtype],
            int(rows),
            int(cols),
        )
    )
    _put_block(buf, bytes(rec.image))
    _put_block(buf, np.ascontiguousarray(fp.keypoints, dtype=KEYPOINT_DTYPE).tobytes())
    _put_block(buf, np.ascontiguousarray(fp.descriptors).tobytes())


def dumps(records: Sequence[TargetRecord]) -> bytes:
    buf = bytearray(_HEADER.pack(MAGIC, VERSION, len(records)))
    for rec in records:
        _encode_record(buf, rec)
    return bytes(buf)


# -----------------------------
# Decoding
# -----------------------------

class _Reader:
    def __init__(self, data: bytes):
        self.data = memoryview(data)
        self.pos = 0

    def take(self, n: int, what: str) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise CodecIntegrityError(
                f"truncated catalog: need {n} bytes for {what} at offset {self.pos}, have {len(self.data) - self.pos}"
            )
        out = bytes(self.data[self.pos : self.pos + n])
        self.pos += n
        return out

    def unpack(self, st: struct.Struct, what: str) -> Tuple:
        return st.unpack(self.take(st.size, what))

    def block(self, what: str) -> bytes:
        (n,) = self.unpack(_LEN, f"{what} length")
        return self.take(n, what)

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos


def _decode_record(r: _Reader, index: int) -> TargetRecord:
    raw_id = r.block(f"record {index} id")
    try:
        target_id = raw_id.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CodecIntegrityError(f"record {index}: id is not valid UTF-8") from e

    wu, hu, fw, fh, code, rows, cols = r.unpack(_RECORD_FIXED, f"record {index} header")
    if code not in _CODE_DTYPES:
        raise CodecIntegrityError(f"record {target_id!r}: unknown descriptor dtype code {code}")
    dtype = _CODE_DTYPES[code]

    image = r.block(f"record {target_id!r} image")
    kp_bytes = r.block(f"record {target_id!r} keypoints")
    desc_bytes = r.block(f"record {target_id!r} descriptors")

    if len(kp_bytes) % KEYPOINT_DTYPE.itemsize != 0:
        raise CodecIntegrityError(
            f"record {target_id!r}: keypoint block of {len(kp_bytes)} bytes is not a multiple of {KEYPOINT_DTYPE.itemsize}"
        )
    if len(kp_bytes) // KEYPOINT_DTYPE.itemsize != rows:
        raise CodecIntegrityError(
            f"record {target_id!r}: {len(kp_bytes) // KEYPOINT_DTYPE.itemsize} keypoints but {rows} descriptor rows"
        )
    if len(desc_bytes) % dtype.itemsize != 0:
        raise CodecIntegrityError(
            f"record {target_id!r}: descriptor block of {len(desc_bytes)} bytes is not a multiple of {dtype.itemsize}"
        )
    if len(desc_bytes) != rows * cols * dtype.itemsize:
        raise CodecIntegrityError(
            f"record {target_id!r}: descriptor block is {len(desc_bytes)} bytes, expected {rows}x{cols}x{dtype.itemsize}"
        )

    keypoints = np.frombuffer(kp_bytes, dtype=KEYPOINT_DTYPE).copy()
    descriptors = np.frombuffer(desc_bytes, dtype=dtype).reshape(rows, cols).copy()
    return TargetRecord(
        id=target_id,
        reference_width_units=float(wu),
        reference_height_units=float(hu),
        fingerprint=FingerprintSet(keypoints, descriptors),
        reference_frame_size=(int(fw), int(fh)),
        image=image,
    )


def loads(data: bytes) -> List[TargetRecord]:
    """Decode a whole blob; any inconsistency raises CodecIntegrityError and nothing is returned."""
    r = _Reader(data)
    magic, version, count = r.unpack(_HEADER, "header")
    if magic != MAGIC:
        raise CodecIntegrityError(f"bad magic {magic!r}")
    if version != VERSION:
        raise CodecIntegrityError(f"unsupported catalog version {version}")
    records = [_decode_record(r, i) for i in range(count)]
    if r.remaining:
        raise CodecIntegrityError(f"{r.remaining} trailing bytes after {count} records")
    return records


# -----------------------------
# Files & export
# -----------------------------

def serialize(path: Union[str, Path], records: Sequence[TargetRecord]) -> None:
    """Write records to `path` atomically (temp file + rename)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    data = dumps(records)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, p)
    log.info("catalog written", extra={"extra": {"path": str(p), "records": len(records), "bytes": len(data)}})


def deserialize(path: Union[str, Path]) -> List[TargetRecord]:
    data = Path(path).read_bytes()
    records = loads(data)
    log.info("catalog read", extra={"extra": {"path": str(path), "records": len(records)}})
    return records


def export_filename(name: str) -> str:
    stem = Path(name).stem if name else "catalog"
    return (stem or "catalog") + FILE_EXTENSION


def export_catalog(name: str, records: Sequence[TargetRecord]) -> Tuple[str, bytes]:
    """(filename, blob) for an on-demand download of a named catalog."""
    return export_filename(name), dumps(records)
