from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from common.errors import DecodeError
from common.types import MatchReport
from recognition.preprocess import AppliedTransforms


def decode_image_field(value: Any) -> bytes:
    """
    Image bytes from a request field: a base64 string (optionally a
    "data:image/...;base64," URL) or a list of byte values.
    """
    if isinstance(value, str):
        s = value
        if ";base64," in s:
            s = s.split(";base64,", 1)[1]
        elif s.startswith("data:") and "," in s:
            s = s.split(",", 1)[1]
        try:
            return base64.b64decode(s, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"image is not valid base64: {e}") from e
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"image byte list is invalid: {e}") from e
    raise DecodeError(f"image must be a base64 string or a byte list, got {type(value).__name__}")


def _int_field(d: Dict[str, Any], key: str) -> int:
    v = d.get(key, 0)
    if v is None:
        return 0
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v) or v < 0:
        raise DecodeError(f"{key} must be a non-negative number")
    return int(v)


def _bool_field(d: Dict[str, Any], key: str) -> bool:
    v = d.get(key, False)
    if v is None:
        return False
    if not isinstance(v, bool):
        raise DecodeError(f"{key} must be a boolean")
    return v


@dataclass(frozen=True, slots=True)
class MatchRequest:
    """
    One query frame as sent by a client.

    `original_width`/`original_height` describe the full-resolution frame the
    image was derived from; 0 means "same as the image". The boolean flags tell
    the server which preprocessing steps the client already applied.
    """
    id: str
    image: bytes
    original_width: int = 0
    original_height: int = 0
    is_grayscale: bool = False
    is_low_resolution: bool = False
    has_roi: bool = False
    has_gaussian_blur: bool = False

    @property
    def original_size(self) -> Optional[Tuple[int, int]]:
        if self.original_width > 0 and self.original_height > 0:
            return (self.original_width, self.original_height)
        return None

    def applied(self) -> AppliedTransforms:
        return AppliedTransforms(
            grayscale=self.is_grayscale,
            downscaled=self.is_low_resolution,
            blurred=self.has_gaussian_blur,
            cropped=self.has_roi,
        )

    @classmethod
    def from_dict(cls, d: Any) -> "MatchRequest":
        if not isinstance(d, dict):
            raise DecodeError("request must be a JSON object")
        if "image" not in d:
            raise DecodeError("request is missing 'image'")
        rid = d.get("id")
        if rid is None:
            rid = ""
        if not isinstance(rid, (str, int)):
            raise DecodeError("request 'id' must be a string")
        return cls(
            id=str(rid),
            image=decode_image_field(d["image"]),
            original_width=_int_field(d, "originalWidth"),
            original_height=_int_field(d, "originalHeight"),
            is_grayscale=_bool_field(d, "isGrayscale"),
            is_low_resolution=_bool_field(d, "isLowResolution"),
            has_roi=_bool_field(d, "hasRoi"),
            has_gaussian_blur=_bool_field(d, "hasGaussianBlur"),
        )

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "MatchRequest":
        try:
            d = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"request is not valid JSON: {e}") from e
        return cls.from_dict(d)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image": base64.b64encode(self.image).decode("ascii"),
            "originalWidth": self.original_width,
            "originalHeight": self.original_height,
            "isGrayscale": self.is_grayscale,
            "isLowResolution": self.is_low_resolution,
            "hasRoi": self.has_roi,
            "hasGaussianBlur": self.has_gaussian_blur,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")


def encode_report(report: MatchReport) -> bytes:
    return json.dumps(report.to_dict()).encode("utf-8")


def decode_report(data: Union[bytes, str]) -> MatchReport:
    try:
        d = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"response is not valid JSON: {e}") from e
    if not isinstance(d, dict):
        raise DecodeError("response must be a JSON object")
    try:
        return MatchReport.from_dict(d)
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"malformed match report: {e}") from e
