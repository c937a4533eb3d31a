from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import numpy as np


# Packed keypoint layout used both in memory and in the catalog blob:
# x, y, size (scale), angle (orientation, deg), response (strength), octave, class_id.
KEYPOINT_DTYPE = np.dtype(
    [
        ("x", "<f4"),
        ("y", "<f4"),
        ("size", "<f4"),
        ("angle", "<f4"),
        ("response", "<f4"),
        ("octave", "<i4"),
        ("class_id", "<i4"),
    ]
)

Point = Tuple[float, float]


def empty_keypoints() -> np.ndarray:
    return np.zeros((0,), dtype=KEYPOINT_DTYPE)


@dataclass(frozen=True, slots=True)
class WorkingFrame:
    """
    The reduced image actually fed to extraction/matching.

    Attributes:
        image: np.ndarray of shape (H,W) or (H,W,3), dtype uint8.
        original_width, original_height: dimensions captured before any transform.
        is_grayscale, is_downscaled, has_crop, has_blur: which transforms were applied.
    """
    image: np.ndarray = field(repr=False)
    original_width: int
    original_height: int
    is_grayscale: bool = False
    is_downscaled: bool = False
    has_crop: bool = False
    has_blur: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.image, np.ndarray):
            raise TypeError("image must be a numpy ndarray")
        if self.image.ndim not in (2, 3):
            raise ValueError("image must be 2D (gray) or 3D (BGR)")
        if self.original_width <= 0 or self.original_height <= 0:
            raise ValueError("original dimensions must be > 0")
        # own a frozen copy; the caller keeps a writable array
        image = np.array(self.image, copy=True, order="C")
        image.setflags(write=False)
        object.__setattr__(self, "image", image)

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    @property
    def original_size(self) -> Tuple[int, int]:
        return (self.original_width, self.original_height)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "width": self.width,
            "height": self.height,
            "original_width": self.original_width,
            "original_height": self.original_height,
            "is_grayscale": self.is_grayscale,
            "is_downscaled": self.is_downscaled,
            "has_crop": self.has_crop,
            "has_blur": self.has_blur,
        }


@dataclass(frozen=True, slots=True)
class FingerprintSet:
    """
    Keypoints (structured array of KEYPOINT_DTYPE) plus a row-major descriptor
    matrix with exactly one row per keypoint.
    """
    keypoints: np.ndarray = field(repr=False)
    descriptors: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        if self.keypoints.dtype != KEYPOINT_DTYPE:
            raise TypeError("keypoints must use KEYPOINT_DTYPE")
        if self.descriptors.ndim != 2:
            raise ValueError("descriptors must be a 2D matrix")
        if self.descriptors.shape[0] != len(self.keypoints):
            raise ValueError(
                f"descriptor rows ({self.descriptors.shape[0]}) != keypoints ({len(self.keypoints)})"
            )

    def __len__(self) -> int:
        return int(len(self.keypoints))

    @property
    def points(self) -> np.ndarray:
        """(N,2) float32 array of keypoint locations."""
        return np.stack([self.keypoints["x"], self.keypoints["y"]], axis=1).astype(np.float32)

    @property
    def descriptor_width(self) -> int:
        return int(self.descriptors.shape[1])

    @classmethod
    def empty(cls, descriptor_width: int = 128, dtype=np.float32) -> "FingerprintSet":
        return cls(empty_keypoints(), np.zeros((0, descriptor_width), dtype=dtype))


@dataclass(frozen=True, slots=True)
class TargetRecord:
    """
    One catalog entry. Created by catalog management; read-only to the core.

    Attributes:
        id: target identifier.
        reference_width_units, reference_height_units: physical size in caller units.
        fingerprint: precomputed keypoints/descriptors of the reference working frame.
        reference_frame_size: (w, h) of the working frame the fingerprint was computed on.
        image: encoded reference working frame (may be empty).
    """
    id: str
    reference_width_units: float
    reference_height_units: float
    fingerprint: FingerprintSet = field(repr=False)
    reference_frame_size: Tuple[int, int]
    image: bytes = field(default=b"", repr=False)


@dataclass(frozen=True, slots=True)
class Correspondence:
    query_idx: int
    target_idx: int
    distance: float = 0.0
    valid: bool = True


@dataclass(frozen=True, slots=True)
class PoseEstimate:
    """
    Output of the robust estimator. `found` is true iff a non-degenerate transform exists.
    """
    transform: Optional[np.ndarray] = field(default=None, repr=False)
    inliers: int = 0
    total: int = 0

    @property
    def found(self) -> bool:
        return self.transform is not None

    @classmethod
    def not_found(cls, total: int = 0) -> "PoseEstimate":
        return cls(transform=None, inliers=0, total=total)


@dataclass(frozen=True, slots=True)
class MatchResult:
    """
    Pose of one recognized target in original-frame coordinates.

    `angle` comes from the minimum-area rectangle (OpenCV convention, degrees in
    (0, 90]); `transform_angle` is atan2(H[1,0], H[0,0]) in degrees (-180, 180].
    """
    target_id: str
    projected_corners: Tuple[Point, Point, Point, Point]
    center: Point
    angle: float
    size: Tuple[float, float]
    transform: np.ndarray = field(repr=False)
    transform_angle: float = 0.0
    inliers: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetId": self.target_id,
            "projectedCorners": [[float(x), float(y)] for x, y in self.projected_corners],
            "size": {"width": float(self.size[0]), "height": float(self.size[1])},
            "centerX": float(self.center[0]),
            "centerY": float(self.center[1]),
            "angle": float(self.angle),
            "transformAngle": float(self.transform_angle),
            "transform": np.asarray(self.transform, dtype=float).tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MatchResult":
        corners = tuple((float(p[0]), float(p[1])) for p in d["projectedCorners"])
        if len(corners) != 4:
            raise ValueError("projectedCorners must hold 4 points")
        size = d.get("size") or {}
        return cls(
            target_id=str(d["targetId"]),
            projected_corners=corners,  # type: ignore[arg-type]
            center=(float(d["centerX"]), float(d["centerY"])),
            angle=float(d["angle"]),
            size=(float(size.get("width", 0.0)), float(size.get("height", 0.0))),
            transform=np.asarray(d["transform"], dtype=float).reshape(3, 3),
            transform_angle=float(d.get("transformAngle", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class MatchReport:
    """Aggregated result for one query frame; results carry no ordering guarantee."""
    results: Tuple[MatchResult, ...] = ()
    request_id: Optional[str] = None

    @property
    def has_matches(self) -> bool:
        return len(self.results) > 0

    @classmethod
    def from_results(cls, results: Sequence[MatchResult], request_id: Optional[str] = None) -> "MatchReport":
        return cls(results=tuple(results), request_id=request_id)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "hasMatches": self.has_matches,
            "matches": [r.to_dict() for r in self.results],
        }
        if self.request_id is not None:
            d["id"] = self.request_id
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MatchReport":
        results: List[MatchResult] = [MatchResult.from_dict(m) for m in d.get("matches", [])]
        return cls(results=tuple(results), request_id=d.get("id"))
