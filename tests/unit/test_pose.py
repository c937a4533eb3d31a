"""
Unit tests for pose estimation and summarization
"""

import math
import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import ConfigurationError, PoseNotFound
from common.types import KEYPOINT_DTYPE, Correspondence, FingerprintSet, PoseEstimate
from recognition import pose as pose_mod
from recognition.pose import (
    PoseConfig,
    estimate_pose,
    fit_homography,
    is_degenerate,
    reference_corners,
    summarize_pose,
    transform_angle,
    upscale_points,
)


def _fingerprint(points):
    kps = np.zeros((len(points),), dtype=KEYPOINT_DTYPE)
    for i, (x, y) in enumerate(points):
        kps[i] = (x, y, 2.0, 0.0, 1.0, 0, -1)
    return FingerprintSet(kps, np.zeros((len(points), 8), dtype=np.float32))


def _grid(n=6, step=20.0, off=5.0):
    return [(off + i * step, off + j * step) for i in range(n) for j in range(n)]


class TestUpscale:
    """Working frame -> original frame is a pure linear scale"""

    @pytest.mark.parametrize("pt", [(0.0, 0.0), (320.0, 240.0), (17.25, 203.5)])
    def test_linearity(self, pt):
        out = upscale_points(np.array([pt]), (320, 240), (1920, 1080))
        assert out[0, 0] == pytest.approx(pt[0] * 1920 / 320)
        assert out[0, 1] == pytest.approx(pt[1] * 1080 / 240)

    def test_identity_when_sizes_equal(self):
        pts = np.array([[1.5, 2.5], [100.0, 50.0]])
        assert np.allclose(upscale_points(pts, (640, 480), (640, 480)), pts)

    def test_input_not_modified(self):
        pts = np.array([[1.0, 1.0]])
        upscale_points(pts, (10, 10), (20, 20))
        assert pts[0, 0] == 1.0


class TestEstimate:
    """Robust estimator"""

    def test_recovers_known_homography(self):
        H = np.array([[1.1, 0.05, 12.0], [-0.04, 0.95, 7.0], [1e-4, 5e-5, 1.0]])
        src = np.float32(_grid()).reshape(-1, 1, 2)
        dst = cv2.perspectiveTransform(src, H).astype(np.float32)
        est = fit_homography(src, dst, PoseConfig())
        assert est.found
        assert est.inliers == len(src)
        assert np.allclose(est.transform / est.transform[2, 2], H, atol=1e-3)

    def test_estimate_pose_maps_target_to_query(self):
        target = _fingerprint(_grid())
        query = _fingerprint([(x + 30.0, y + 10.0) for x, y in _grid()])
        corrs = [Correspondence(i, i) for i in range(len(target))]
        est = estimate_pose(corrs, query, target)
        assert est.found
        assert est.transform[0, 2] == pytest.approx(30.0, abs=1e-3)
        assert est.transform[1, 2] == pytest.approx(10.0, abs=1e-3)

    def test_fewer_than_four_never_reach_estimator(self, monkeypatch):
        def boom(*a, **k):
            raise AssertionError("estimator must not be called")

        monkeypatch.setattr(pose_mod.cv2, "findHomography", boom)
        fp = _fingerprint(_grid(2))
        corrs = [Correspondence(i, i) for i in range(3)]
        est = estimate_pose(corrs, fp, fp)
        assert not est.found
        assert est.transform is None

    def test_invalid_correspondences_are_not_counted(self, monkeypatch):
        def boom(*a, **k):
            raise AssertionError("estimator must not be called")

        monkeypatch.setattr(pose_mod.cv2, "findHomography", boom)
        fp = _fingerprint(_grid(3))
        corrs = [Correspondence(i, i, valid=i < 3) for i in range(9)]
        assert not estimate_pose(corrs, fp, fp).found

    @pytest.mark.parametrize(
        "H",
        [None, np.zeros((0, 0)), np.zeros((3, 3)), np.array([[1, 2, 0], [2, 4, 0], [0, 0, 1.0]]), np.full((3, 3), np.nan)],
    )
    def test_degenerate_results_are_rejected(self, monkeypatch, H):
        monkeypatch.setattr(pose_mod.cv2, "findHomography", lambda *a, **k: (H, np.ones((36, 1), np.uint8)))
        fp = _fingerprint(_grid())
        est = estimate_pose([Correspondence(i, i) for i in range(36)], fp, fp)
        assert not est.found

    def test_is_degenerate(self):
        assert is_degenerate(None)
        assert is_degenerate(np.zeros((3, 3)))
        assert not is_degenerate(np.eye(3))

    def test_config_validation(self):
        with pytest.raises(ConfigurationError):
            PoseConfig(ransac_px=0)
        with pytest.raises(ConfigurationError):
            PoseConfig(min_inliers=3)


class TestSummarize:
    """Pose summary in original-frame coordinates"""

    def test_requires_found_estimate(self):
        with pytest.raises(PoseNotFound):
            summarize_pose(PoseEstimate.not_found(), (10, 10), (10, 10), (10, 10))

    def test_identity_with_upscale(self):
        est = PoseEstimate(transform=np.eye(3), inliers=10, total=10)
        r = summarize_pose(est, (100, 50), (100, 50), (200, 100), target_id="t")
        assert r.target_id == "t"
        assert np.allclose(r.projected_corners, [(0, 0), (200, 0), (200, 100), (0, 100)])
        assert r.center == pytest.approx((100.0, 50.0))
        assert sorted(r.size) == pytest.approx([100.0, 200.0])
        assert r.transform_angle == pytest.approx(0.0)

    def test_rotation_angles(self):
        a = math.radians(30.0)
        R = np.array([[math.cos(a), -math.sin(a), 200.0], [math.sin(a), math.cos(a), 100.0], [0, 0, 1.0]])
        r = summarize_pose(PoseEstimate(transform=R, inliers=8, total=8), (80, 40), (640, 480), (640, 480))
        assert r.transform_angle == pytest.approx(30.0)
        assert sorted(r.size) == pytest.approx([40.0, 80.0], abs=1e-3)
        # min-area rectangle angle is reported separately, in OpenCV's (0, 90] range
        assert 0.0 < r.angle <= 90.0
        assert min(abs(r.angle - 30.0), abs(r.angle - 60.0)) < 1e-2

    def test_center_is_rectangle_center(self):
        # Perspective-distorted quadrilateral: center comes from the rectangle, not the point mean.
        H = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.002, 0.0, 1.0]])
        r = summarize_pose(PoseEstimate(transform=H, inliers=8, total=8), (200, 100), (400, 400), (400, 400))
        (cx, cy), _, _ = cv2.minAreaRect(np.float32(r.projected_corners))
        assert r.center == pytest.approx((cx, cy))

    def test_reference_corner_order(self):
        assert reference_corners(4, 3).tolist() == [[0, 0], [4, 0], [4, 3], [0, 3]]

    def test_transform_angle(self):
        assert transform_angle(np.array([[0.0, -1.0, 0], [1.0, 0.0, 0], [0, 0, 1]])) == pytest.approx(90.0)
