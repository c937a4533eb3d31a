from __future__ import annotations

from typing import Iterable, List, Optional, Tuple, Union

import cv2
import numpy as np

from common.errors import ConfigurationError
from common.logging_setup import get_logger
from common.types import TargetRecord
from recognition.features import FingerprintExtractor
from recognition.preprocess import PreprocessOptions, decode_image, encode_image, preprocess


log = get_logger("catalog.builder")


def height_units_for(width_units: float, width_px: int, height_px: int) -> float:
    """Physical height following the image aspect ratio: width_units / (w / h)."""
    if width_px <= 0 or height_px <= 0:
        raise ValueError("image dimensions must be > 0")
    return float(width_units) / (float(width_px) / float(height_px))


def build_target_record(
    target_id: str,
    image: Union[bytes, np.ndarray],
    width_units: float,
    extractor: FingerprintExtractor,
    options: Optional[PreprocessOptions] = None,
    *,
    image_ext: str = ".jpg",
) -> TargetRecord:
    """
    Reference image -> TargetRecord.

    The same preprocessing a query goes through is applied, the fingerprint is
    computed on the resulting working frame, and that frame (re-encoded) is
    stored as the record's reference image.
    """
    if not target_id:
        raise ConfigurationError("target id must not be empty")
    if width_units <= 0:
        raise ConfigurationError("width_units must be > 0")
    options = options or PreprocessOptions()

    img = decode_image(image) if isinstance(image, (bytes, bytearray, memoryview)) else image
    frame = preprocess(img, options)
    fp = extractor.extract(frame)
    if len(fp) == 0:
        log.warning("reference image has no keypoints", extra={"extra": {"target": target_id}})

    w, h = frame.size
    rec = TargetRecord(
        id=target_id,
        reference_width_units=float(width_units),
        reference_height_units=height_units_for(width_units, w, h),
        fingerprint=fp,
        reference_frame_size=(w, h),
        image=encode_image(frame.image, image_ext),
    )
    log.info(
        "target built",
        extra={"extra": {"target": target_id, "keypoints": len(fp), "frame": [w, h]}},
    )
    return rec


def build_catalog(
    items: Iterable[Tuple[str, Union[bytes, np.ndarray], float]],
    extractor: FingerprintExtractor,
    options: Optional[PreprocessOptions] = None,
) -> List[TargetRecord]:
    """Build records for (id, image, width_units) triples; ids must be unique."""
    records: List[TargetRecord] = []
    seen = set()
    for target_id, image, width_units in items:
        if target_id in seen:
            raise ConfigurationError(f"duplicate target id {target_id!r}")
        seen.add(target_id)
        records.append(build_target_record(target_id, image, width_units, extractor, options))
    return records


def synthesize_target(size: Tuple[int, int] = (480, 360), seed: int = 1234) -> np.ndarray:
    """Feature-rich synthetic BGR reference image (filled shapes and edges)."""
    w, h = size
    rng = np.random.default_rng(seed)
    base = (rng.normal(128, 12, size=(h, w, 3))).clip(0, 255).astype(np.uint8)

    for _ in range(45):
        x1, y1 = int(rng.integers(0, w)), int(rng.integers(0, h))
        x2 = int(np.clip(x1 + rng.integers(-w // 5, w // 5), 0, w - 1))
        y2 = int(np.clip(y1 + rng.integers(-h // 5, h // 5), 0, h - 1))
        color = tuple(int(c) for c in rng.integers(0, 256, size=3))
        cv2.rectangle(base, (min(x1, x2), min(y1, y2)), (max(x1, x2), max(y1, y2)), color, -1)
    for _ in range(35):
        c = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        r = int(rng.integers(4, max(5, min(w, h) // 8)))
        color = tuple(int(v) for v in rng.integers(0, 256, size=3))
        cv2.circle(base, c, r, color, -1 if rng.random() < 0.6 else 2)
    for _ in range(20):
        p1 = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        p2 = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        cv2.line(base, p1, p2, (255, 255, 255) if rng.random() < 0.5 else (0, 0, 0), 2)

    return base
