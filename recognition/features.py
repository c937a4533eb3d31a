from __future__ import annotations
"""
Fingerprint extraction & matching.

- ExtractorConfig / FingerprintExtractor: SIFT (default), ORB, AKAZE, BRISK, KAZE
  behind one extract(frame) -> FingerprintSet contract
- MatcherConfig / FingerprintMatcher: brute-force or FLANN KNN + Lowe ratio +
  one-to-one filtering, followed by a scale/orientation consistency vote
- keypoints_to_array / array_to_keypoints: cv2.KeyPoint <-> KEYPOINT_DTYPE
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from common.errors import ConfigurationError
from common.types import KEYPOINT_DTYPE, Correspondence, FingerprintSet, WorkingFrame


EXTRACTOR_METHODS = ("sift", "orb", "akaze", "brisk", "kaze")
MATCHER_METHODS = ("bf", "flann")

# (descriptor width, dtype) produced by each detector with the settings used below
_DESCRIPTOR_SHAPES = {
    "sift": (128, np.float32),
    "orb": (32, np.uint8),
    "akaze": (61, np.uint8),
    "brisk": (64, np.uint8),
    "kaze": (64, np.float32),
}


# -----------------------------
# Keypoint conversion
# -----------------------------

def keypoints_to_array(kps: Sequence[cv2.KeyPoint]) -> np.ndarray:
    arr = np.zeros((len(kps),), dtype=KEYPOINT_DTYPE)
    for i, kp in enumerate(kps):
        arr[i] = (kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave, kp.class_id)
    return arr


def array_to_keypoints(arr: np.ndarray) -> List[cv2.KeyPoint]:
    return [
        cv2.KeyPoint(
            float(r["x"]),
            float(r["y"]),
            float(r["size"]),
            float(r["angle"]),
            float(r["response"]),
            int(r["octave"]),
            int(r["class_id"]),
        )
        for r in arr
    ]


# -----------------------------
# Extractors
# -----------------------------

@dataclass(frozen=True)
class ExtractorConfig:
    """
    Named numeric knobs for the detector/descriptor. Only the knobs relevant to
    `method` are used; all of them are validated.
    """
    method: str = "sift"
    max_features: int = 300          # sift nfeatures (0 = unlimited), orb nfeatures
    octave_layers: int = 3           # sift / akaze / kaze layers per octave
    contrast_threshold: float = 0.04  # sift
    edge_threshold: float = 10.0     # sift edge threshold
    sigma: float = 1.6               # sift
    scale_factor: float = 1.2        # orb pyramid decimation
    n_levels: int = 8                # orb pyramid levels
    patch_size: int = 31             # orb patch / edge border
    fast_threshold: int = 20         # orb FAST threshold
    detector_threshold: float = 0.001  # akaze / kaze response threshold
    n_octaves: int = 4               # akaze / kaze / brisk octaves
    brisk_threshold: int = 30        # brisk AGAST threshold

    def __post_init__(self) -> None:
        m = self.method.lower()
        if m not in EXTRACTOR_METHODS:
            raise ConfigurationError(f"Unsupported extractor method: {self.method}")
        object.__setattr__(self, "method", m)
        if self.max_features < 0:
            raise ConfigurationError("max_features must be >= 0")
        if m == "orb" and self.max_features == 0:
            raise ConfigurationError("orb requires max_features > 0")
        for name in ("octave_layers", "n_levels", "n_octaves", "patch_size"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        for name in ("contrast_threshold", "edge_threshold", "sigma", "detector_threshold"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.scale_factor <= 1.0:
            raise ConfigurationError("scale_factor must be > 1")
        if self.fast_threshold < 0 or self.brisk_threshold < 0:
            raise ConfigurationError("thresholds must be >= 0")

    @property
    def descriptor_kind(self) -> str:
        return "float" if _DESCRIPTOR_SHAPES[self.method][1] == np.float32 else "binary"

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "ExtractorConfig":
        d = dict(d or {})
        known = {k: d[k] for k in cls.__dataclass_fields__ if k in d}
        return cls(**known)


class FingerprintExtractor:
    """
    extract(frame) -> FingerprintSet, deterministic for a frame and configuration.

    A fresh cv2 detector is built for each call, so one extractor can be shared
    by concurrent sessions.
    """

    def __init__(self, config: Optional[ExtractorConfig] = None):
        self.config = config or ExtractorConfig()

    @property
    def descriptor_kind(self) -> str:
        return self.config.descriptor_kind

    def _create(self):
        c = self.config
        if c.method == "sift":
            return cv2.SIFT_create(
                nfeatures=int(c.max_features),
                nOctaveLayers=int(c.octave_layers),
                contrastThreshold=float(c.contrast_threshold),
                edgeThreshold=float(c.edge_threshold),
                sigma=float(c.sigma),
            )
        if c.method == "orb":
            return cv2.ORB_create(
                nfeatures=int(c.max_features),
                scaleFactor=float(c.scale_factor),
                nlevels=int(c.n_levels),
                edgeThreshold=int(c.patch_size),
                firstLevel=0,
                WTA_K=2,
                scoreType=cv2.ORB_HARRIS_SCORE,
                patchSize=int(c.patch_size),
                fastThreshold=int(c.fast_threshold),
            )
        if c.method == "akaze":
            return cv2.AKAZE_create(
                descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
                descriptor_size=0,
                descriptor_channels=3,
                threshold=float(c.detector_threshold),
                nOctaves=int(c.n_octaves),
                nOctaveLayers=int(c.octave_layers),
                diffusivity=cv2.KAZE_DIFF_PM_G2,
            )
        if c.method == "brisk":
            return cv2.BRISK_create(thresh=int(c.brisk_threshold), octaves=int(c.n_octaves))
        return cv2.KAZE_create(
            extended=False,
            upright=False,
            threshold=float(c.detector_threshold),
            nOctaves=int(c.n_octaves),
            nOctaveLayers=int(c.octave_layers),
            diffusivity=cv2.KAZE_DIFF_PM_G2,
        )

    def extract(self, frame: Union[WorkingFrame, np.ndarray], mask: Optional[np.ndarray] = None) -> FingerprintSet:
        img = frame.image if isinstance(frame, WorkingFrame) else frame
        gray = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        kps, des = self._create().detectAndCompute(gray, mask)
        width, dtype = _DESCRIPTOR_SHAPES[self.config.method]
        if des is None or len(kps) == 0:
            return FingerprintSet.empty(width, dtype)
        return FingerprintSet(keypoints_to_array(kps), np.ascontiguousarray(des))


# -----------------------------
# Matching
# -----------------------------

@dataclass(frozen=True)
class MatcherConfig:
    """
    Attributes:
        method: "bf" (exhaustive) or "flann" (approximate index).
        ratio: Lowe ratio; best/second-best distance must be below it.
        enforce_uniqueness: at most one correspondence per target keypoint.
        vote: run the scale/orientation consistency vote.
        rotation_bins: orientation bins covering [0, 360).
        scale_tolerance: max |scale ratio - mean scale ratio of dominant bin|.
        min_consistent_matches: fewer surviving correspondences -> report none.
    """
    method: str = "bf"
    ratio: float = 0.8
    enforce_uniqueness: bool = True
    vote: bool = True
    rotation_bins: int = 20
    scale_tolerance: float = 1.5
    min_consistent_matches: int = 36

    def __post_init__(self) -> None:
        m = self.method.lower()
        if m not in MATCHER_METHODS:
            raise ConfigurationError(f"Unsupported matcher method: {self.method}")
        object.__setattr__(self, "method", m)
        if not (0.0 < self.ratio <= 1.0):
            raise ConfigurationError("ratio must be in (0, 1]")
        if self.rotation_bins <= 0:
            raise ConfigurationError("rotation_bins must be > 0")
        if self.scale_tolerance <= 0:
            raise ConfigurationError("scale_tolerance must be > 0")
        if self.min_consistent_matches < 0:
            raise ConfigurationError("min_consistent_matches must be >= 0")

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "MatcherConfig":
        d = dict(d or {})
        known = {k: d[k] for k in cls.__dataclass_fields__ if k in d}
        return cls(**known)


def vote_for_size_and_orientation(
    query_kps: np.ndarray,
    target_kps: np.ndarray,
    correspondences: Sequence[Correspondence],
    *,
    rotation_bins: int = 20,
    scale_tolerance: float = 1.5,
) -> List[Correspondence]:
    """
    Mark correspondences outside the dominant orientation bin, or whose scale
    ratio strays from that bin's mean, as invalid. Returns a new list with the
    same order and length; only `valid` changes.
    """
    if not correspondences:
        return []
    qi = np.fromiter((c.query_idx for c in correspondences), dtype=np.int64, count=len(correspondences))
    ti = np.fromiter((c.target_idx for c in correspondences), dtype=np.int64, count=len(correspondences))
    q = query_kps[qi]
    t = target_kps[ti]

    q_size = q["size"].astype(np.float64)
    scale = np.where(q_size > 0, t["size"].astype(np.float64) / np.where(q_size > 0, q_size, 1.0), 1.0)
    angle = np.mod(t["angle"].astype(np.float64) - q["angle"].astype(np.float64), 360.0)
    bins = np.clip((angle / (360.0 / rotation_bins)).astype(np.int64), 0, rotation_bins - 1)

    votes = np.bincount(bins, minlength=rotation_bins)
    best_bin = int(np.argmax(votes))  # first bin wins ties
    best_scale = float(scale[bins == best_bin].mean())

    keep = (bins == best_bin) & (np.abs(scale - best_scale) < scale_tolerance)
    return [
        Correspondence(c.query_idx, c.target_idx, c.distance, bool(k) and c.valid)
        for c, k in zip(correspondences, keep)
    ]


class FingerprintMatcher:
    """
    match(query, target) -> valid correspondences (query keypoint -> target keypoint).

    Returns an empty list when fewer than `min_consistent_matches` survive the
    ratio test and the consistency vote; callers skip pose estimation then.
    """

    def __init__(self, config: Optional[MatcherConfig] = None, descriptor_kind: str = "float"):
        if descriptor_kind not in ("float", "binary"):
            raise ConfigurationError(f"Unsupported descriptor kind: {descriptor_kind}")
        self.config = config or MatcherConfig()
        self.descriptor_kind = descriptor_kind

    def _create(self):
        binary = self.descriptor_kind == "binary"
        if self.config.method == "flann":
            if binary:
                index_params = dict(algorithm=6, table_number=6, key_size=12, multi_probe_level=1)  # LSH
            else:
                index_params = dict(algorithm=1, trees=5)  # KD-tree
            return cv2.FlannBasedMatcher(index_params, dict(checks=50))
        return cv2.BFMatcher(cv2.NORM_HAMMING if binary else cv2.NORM_L2, crossCheck=False)

    def candidates(self, query: FingerprintSet, target: FingerprintSet) -> List[Correspondence]:
        """
        KNN (k=2) + Lowe ratio, optionally one-to-one on the target side.
        """
        if len(query) == 0 or len(target) == 0:
            return []
        qd, td = query.descriptors, target.descriptors
        if self.config.method == "flann":
            # FLANN asserts k <= index size
            if len(target) < 2:
                return []
            if self.descriptor_kind == "float":
                qd = qd.astype(np.float32, copy=False)
                td = td.astype(np.float32, copy=False)
        knn = self._create().knnMatch(qd, td, k=2)
        ratio = self.config.ratio
        good: List[Correspondence] = []
        used_target = set()
        for pair in knn:
            if not pair:
                continue
            m = pair[0]
            if len(pair) > 1 and not (m.distance < ratio * pair[1].distance):
                continue
            if self.config.enforce_uniqueness and m.trainIdx in used_target:
                continue
            used_target.add(m.trainIdx)
            good.append(Correspondence(int(m.queryIdx), int(m.trainIdx), float(m.distance)))
        return good

    def match(self, query: FingerprintSet, target: FingerprintSet) -> List[Correspondence]:
        corrs = self.candidates(query, target)
        if self.config.vote and corrs:
            corrs = vote_for_size_and_orientation(
                query.keypoints,
                target.keypoints,
                corrs,
                rotation_bins=self.config.rotation_bins,
                scale_tolerance=self.config.scale_tolerance,
            )
        valid = [c for c in corrs if c.valid]
        if not valid or len(valid) < self.config.min_consistent_matches:
            return []
        return valid


def matcher_for(extractor: FingerprintExtractor, config: Optional[MatcherConfig] = None) -> FingerprintMatcher:
    """Matcher whose distance norm fits the extractor's descriptors."""
    return FingerprintMatcher(config, descriptor_kind=extractor.descriptor_kind)


def correspondence_points(
    query: FingerprintSet,
    target: FingerprintSet,
    correspondences: Sequence[Correspondence],
) -> Tuple[np.ndarray, np.ndarray]:
    """(target_pts, query_pts) as (N,1,2) float32 arrays for the valid correspondences."""
    valid = [c for c in correspondences if c.valid]
    tp = target.points[[c.target_idx for c in valid]] if valid else np.zeros((0, 2), np.float32)
    qp = query.points[[c.query_idx for c in valid]] if valid else np.zeros((0, 2), np.float32)
    return tp.reshape(-1, 1, 2), qp.reshape(-1, 1, 2)
