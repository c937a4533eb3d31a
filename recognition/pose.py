from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import ConfigurationError, PoseNotFound
from common.types import Correspondence, FingerprintSet, MatchResult, PoseEstimate
from recognition.features import correspondence_points

MIN_CORRESPONDENCES = 4


@dataclass(frozen=True, slots=True)
class PoseConfig:
    ransac_px: float = 2.0
    max_iters: int = 2000
    confidence: float = 0.995
    min_inliers: int = 4
    min_determinant: float = 1e-6

    def __post_init__(self) -> None:
        if self.ransac_px <= 0:
            raise ConfigurationError("ransac_px must be > 0")
        if self.max_iters <= 0:
            raise ConfigurationError("max_iters must be > 0")
        if not (0.0 < self.confidence < 1.0):
            raise ConfigurationError("confidence must be in (0, 1)")
        if self.min_inliers < MIN_CORRESPONDENCES:
            raise ConfigurationError(f"min_inliers must be >= {MIN_CORRESPONDENCES}")
        if self.min_determinant < 0:
            raise ConfigurationError("min_determinant must be >= 0")

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "PoseConfig":
        d = dict(d or {})
        known = {k: d[k] for k in cls.__dataclass_fields__ if k in d}
        return cls(**known)


# -----------------------------
# Estimation
# -----------------------------

def is_degenerate(H: Optional[np.ndarray], min_determinant: float = 1e-6) -> bool:
    """
    True for a missing, empty, non-finite or singular 3x3 transform, or one whose
    projective scale H[2,2] vanishes.
    """
    if H is None:
        return True
    H = np.asarray(H, dtype=float)
    if H.size == 0 or H.shape != (3, 3) or not np.all(np.isfinite(H)):
        return True
    if abs(H[2, 2]) < 1e-12:
        return True
    Hn = H / H[2, 2]
    return abs(float(np.linalg.det(Hn))) < min_determinant


def fit_homography(
    target_pts: np.ndarray,
    query_pts: np.ndarray,
    config: PoseConfig,
) -> PoseEstimate:
    """
    RANSAC homography mapping target-frame points onto query-frame points.
    Fewer than 4 points never reach cv2.findHomography.
    """
    total = int(len(target_pts))
    if total < MIN_CORRESPONDENCES or len(query_pts) != total:
        return PoseEstimate.not_found(total)

    H, mask = cv2.findHomography(
        target_pts,
        query_pts,
        cv2.RANSAC,
        ransacReprojThreshold=float(config.ransac_px),
        maxIters=int(config.max_iters),
        confidence=float(config.confidence),
    )
    if is_degenerate(H, config.min_determinant):
        return PoseEstimate.not_found(total)

    inliers = int(mask.ravel().astype(bool).sum()) if mask is not None else 0
    if inliers < config.min_inliers:
        return PoseEstimate.not_found(total)
    return PoseEstimate(transform=np.asarray(H, dtype=float), inliers=inliers, total=total)


def estimate_pose(
    correspondences: Sequence[Correspondence],
    query: FingerprintSet,
    target: FingerprintSet,
    config: Optional[PoseConfig] = None,
) -> PoseEstimate:
    """Fit the target -> query transform from the valid correspondences."""
    config = config or PoseConfig()
    valid = [c for c in correspondences if c.valid]
    if len(valid) < MIN_CORRESPONDENCES:
        return PoseEstimate.not_found(len(valid))
    target_pts, query_pts = correspondence_points(query, target, valid)
    return fit_homography(target_pts, query_pts, config)


# -----------------------------
# Summarization
# -----------------------------

def reference_corners(width: float, height: float) -> np.ndarray:
    """(4,2) corners (0,0)-(w,0)-(w,h)-(0,h) of a width x height rectangle."""
    w, h = float(width), float(height)
    return np.array([[0.0, 0.0], [w, 0.0], [w, h], [0.0, h]], dtype=np.float64)


def project_points(points: np.ndarray, H: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(pts, np.asarray(H, dtype=np.float64)).reshape(-1, 2)


def upscale_points(
    points: np.ndarray,
    working_size: Tuple[int, int],
    original_size: Tuple[int, int],
) -> np.ndarray:
    """
    Linear rescale from working-frame to original-frame coordinates:
    (x, y) -> (x * W/w, y * H/h).
    """
    w, h = working_size
    W, H = original_size
    if w <= 0 or h <= 0:
        raise ValueError("working size must be positive")
    sx = float(W) / float(w)
    sy = float(H) / float(h)
    out = np.asarray(points, dtype=np.float64).reshape(-1, 2).copy()
    out[:, 0] *= sx
    out[:, 1] *= sy
    return out


def transform_angle(H: np.ndarray) -> float:
    """In-plane rotation of the transform's upper-left block, degrees."""
    return math.degrees(math.atan2(float(H[1, 0]), float(H[0, 0])))


def summarize_pose(
    estimate: PoseEstimate,
    target_size: Tuple[int, int],
    working_size: Tuple[int, int],
    original_size: Tuple[int, int],
    target_id: str = "",
) -> MatchResult:
    """
    Project the target reference rectangle, upscale it to the original frame and
    reduce it to a minimum-area rectangle.

    Raises PoseNotFound when handed an estimate without a transform.
    """
    if not estimate.found:
        raise PoseNotFound(f"summarize_pose called without a transform (target={target_id!r})")
    H = estimate.transform

    corners = reference_corners(*target_size)
    projected = project_points(corners, H)
    scaled = upscale_points(projected, working_size, original_size)

    (cx, cy), (rw, rh), angle = cv2.minAreaRect(scaled.astype(np.float32))
    return MatchResult(
        target_id=target_id,
        projected_corners=tuple((float(x), float(y)) for x, y in scaled),  # type: ignore[arg-type]
        center=(float(cx), float(cy)),
        angle=float(angle),
        size=(float(rw), float(rh)),
        transform=np.array(H, dtype=float, copy=True),
        transform_angle=transform_angle(H),
        inliers=estimate.inliers,
    )
