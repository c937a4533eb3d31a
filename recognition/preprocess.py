from __future__ import annotations
"""
Frame preprocessing:
- Decode raw image bytes (PNG/JPEG/...) into a BGR or gray uint8 buffer
- Grayscale conversion
- Bounded-dimension downscale (aspect preserving)
- Optional Gaussian blur
- Optional crop, clamped to the buffer bounds

Transforms run in a fixed order: gray -> downscale -> blur -> crop. Each step
can be marked as already applied by the sender, in which case it is skipped
but still recorded on the resulting WorkingFrame.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from common.errors import ConfigurationError, DecodeError
from common.types import WorkingFrame


@dataclass(frozen=True, slots=True)
class PreprocessOptions:
    """
    Immutable description of which transforms to apply.

    Attributes:
        grayscale: convert to single-channel gray.
        max_dimension: downscale so that max(w, h) <= max_dimension (None disables).
        blur_ksize: Gaussian kernel (w, h); odd values, or (0, 0) to derive from sigma.
        blur_sigma: Gaussian sigma X; 0 derives it from the kernel size.
        crop: (x, y, w, h) in working-frame pixels, applied last.
    """
    grayscale: bool = True
    max_dimension: Optional[int] = 640
    blur_ksize: Optional[Tuple[int, int]] = (5, 5)
    blur_sigma: float = 0.0
    crop: Optional[Tuple[int, int, int, int]] = None

    def __post_init__(self) -> None:
        if self.max_dimension is not None and int(self.max_dimension) <= 0:
            raise ConfigurationError("max_dimension must be greater than zero")
        if self.blur_sigma < 0:
            raise ConfigurationError("blur_sigma must be >= 0")
        if self.blur_ksize is not None:
            kw, kh = (int(v) for v in self.blur_ksize)
            if (kw, kh) == (0, 0):
                if self.blur_sigma <= 0:
                    raise ConfigurationError("blur_ksize (0,0) requires blur_sigma > 0")
            elif kw <= 0 or kh <= 0 or kw % 2 == 0 or kh % 2 == 0:
                raise ConfigurationError(f"blur_ksize must be positive odd values, got {self.blur_ksize}")
        if self.crop is not None:
            x, y, w, h = (int(v) for v in self.crop)
            if x < 0 or y < 0 or w <= 0 or h <= 0:
                raise ConfigurationError(f"invalid crop rectangle {self.crop}")

    @property
    def has_blur(self) -> bool:
        return self.blur_ksize is not None

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "PreprocessOptions":
        d = dict(d or {})
        ksize = d.get("blur_ksize", (5, 5))
        crop = d.get("crop")
        max_dim = d.get("max_dimension", 640)
        return cls(
            grayscale=bool(d.get("grayscale", True)),
            max_dimension=None if max_dim in (None, 0) else int(max_dim),
            blur_ksize=None if ksize is None else (int(ksize[0]), int(ksize[1])),
            blur_sigma=float(d.get("blur_sigma", 0.0)),
            crop=None if crop is None else tuple(int(v) for v in crop),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class AppliedTransforms:
    """Transforms the sender already applied to a buffer before it reached us."""
    grayscale: bool = False
    downscaled: bool = False
    blurred: bool = False
    cropped: bool = False


# -----------------------------
# Decoding
# -----------------------------

def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into a uint8 array (gray or BGR).
    Raises DecodeError for empty or undecodable input.
    """
    if not data:
        raise DecodeError("empty image buffer")
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise DecodeError("failed to decode image bytes")
    if img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    if img.dtype != np.uint8:
        img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return img


def encode_image(img: np.ndarray, ext: str = ".jpg") -> bytes:
    ok, buf = cv2.imencode(ext, img)
    if not ok:
        raise DecodeError(f"failed to encode image as {ext}")
    return buf.tobytes()


# -----------------------------
# Basic image ops
# -----------------------------

def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def downscaled_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """
    Size after bounding max(width, height) by max_dimension, aspect preserved.
    Returns the input size unchanged when both sides already fit.
    """
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = float(max_dimension) / float(max(width, height))
    return max(1, int(width * scale)), max(1, int(height * scale))


def clamp_crop(rect: Tuple[int, int, int, int], width: int, height: int) -> Tuple[int, int, int, int]:
    """Clamp (x, y, w, h) so the rectangle lies inside a width x height buffer."""
    x, y, w, h = (int(v) for v in rect)
    x = min(max(0, x), width - 1)
    y = min(max(0, y), height - 1)
    w = min(w, width - x)
    h = min(h, height - y)
    return x, y, max(1, w), max(1, h)


# -----------------------------
# Turn-key preprocessor
# -----------------------------

def preprocess(
    img: np.ndarray,
    options: PreprocessOptions,
    *,
    original_size: Optional[Tuple[int, int]] = None,
    applied: Optional[AppliedTransforms] = None,
) -> WorkingFrame:
    """
    Build a WorkingFrame from a decoded buffer.

    Args:
        img: decoded uint8 image (gray or BGR).
        options: which transforms to apply.
        original_size: (W, H) of the full-resolution frame when `img` was already
            reduced by the sender; defaults to the size of `img`.
        applied: transforms the sender already performed; they are skipped.
    """
    if not isinstance(img, np.ndarray) or img.ndim not in (2, 3) or img.size == 0:
        raise DecodeError("image buffer must be a non-empty 2D or 3D array")
    applied = applied or AppliedTransforms()
    h0, w0 = img.shape[:2]
    ow, oh = original_size if original_size else (w0, h0)
    if ow <= 0 or oh <= 0:
        ow, oh = w0, h0

    out = img
    is_gray = applied.grayscale or out.ndim == 2
    if options.grayscale and not is_gray:
        out = to_gray_u8(out)
        is_gray = True

    is_down = applied.downscaled
    if options.max_dimension is not None and not applied.downscaled:
        h, w = out.shape[:2]
        nw, nh = downscaled_size(w, h, int(options.max_dimension))
        if (nw, nh) != (w, h):
            out = cv2.resize(out, (nw, nh), interpolation=cv2.INTER_AREA)
            is_down = True

    has_blur = applied.blurred
    if options.has_blur and not applied.blurred:
        out = cv2.GaussianBlur(out, tuple(options.blur_ksize), float(options.blur_sigma))  # type: ignore[arg-type]
        has_blur = True

    has_crop = applied.cropped
    if options.crop is not None and not applied.cropped:
        h, w = out.shape[:2]
        x, y, cw, ch = clamp_crop(options.crop, w, h)
        out = out[y : y + ch, x : x + cw]
        has_crop = True

    return WorkingFrame(
        image=out,
        original_width=int(ow),
        original_height=int(oh),
        is_grayscale=is_gray,
        is_downscaled=is_down,
        has_crop=has_crop,
        has_blur=has_blur,
    )


def preprocess_bytes(
    data: bytes,
    options: PreprocessOptions,
    *,
    original_size: Optional[Tuple[int, int]] = None,
    applied: Optional[AppliedTransforms] = None,
) -> WorkingFrame:
    """decode_image + preprocess; DecodeError on malformed bytes."""
    return preprocess(decode_image(data), options, original_size=original_size, applied=applied)
