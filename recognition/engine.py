from __future__ import annotations

from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from catalog.snapshot import TargetCatalog
from common.logging_setup import get_logger
from common.types import FingerprintSet, MatchReport, MatchResult, TargetRecord, WorkingFrame
from recognition.features import ExtractorConfig, FingerprintExtractor, MatcherConfig, matcher_for
from recognition.pose import PoseConfig, estimate_pose, summarize_pose
from recognition.preprocess import AppliedTransforms, PreprocessOptions, decode_image, preprocess


log = get_logger("recognition")


class RecognitionEngine:
    """
    Runs one query frame against every target of a catalog snapshot.

    Holds only immutable configuration and the snapshot, so an engine can be
    used from a worker thread while its session waits on the network.
    """

    def __init__(
        self,
        catalog: TargetCatalog,
        *,
        extractor: Optional[FingerprintExtractor] = None,
        matcher_config: Optional[MatcherConfig] = None,
        pose_config: Optional[PoseConfig] = None,
        preprocess_options: Optional[PreprocessOptions] = None,
    ):
        self.catalog = catalog
        self.extractor = extractor or FingerprintExtractor(ExtractorConfig())
        self.matcher = matcher_for(self.extractor, matcher_config)
        self.pose_config = pose_config or PoseConfig()
        self.preprocess_options = preprocess_options or PreprocessOptions()

    # -----------------------------
    # Stages
    # -----------------------------

    def prepare(
        self,
        image: Union[bytes, np.ndarray],
        *,
        original_size: Optional[Tuple[int, int]] = None,
        applied: Optional[AppliedTransforms] = None,
    ) -> WorkingFrame:
        img = decode_image(image) if isinstance(image, (bytes, bytearray, memoryview)) else image
        return preprocess(img, self.preprocess_options, original_size=original_size, applied=applied)

    def match_target(
        self,
        query: FingerprintSet,
        frame: WorkingFrame,
        target: TargetRecord,
    ) -> Optional[MatchResult]:
        """Pose of `target` in the original frame, or None when it is not present."""
        tfp = target.fingerprint
        if len(tfp) == 0 or len(query) == 0:
            return None
        if tfp.descriptor_width != query.descriptor_width or tfp.descriptors.dtype != query.descriptors.dtype:
            log.warning(
                "descriptor layout mismatch; target skipped",
                extra={"extra": {
                    "target": target.id,
                    "target_desc": [tfp.descriptor_width, str(tfp.descriptors.dtype)],
                    "query_desc": [query.descriptor_width, str(query.descriptors.dtype)],
                }},
            )
            return None

        try:
            corrs = self.matcher.match(query, tfp)
            if not corrs:
                return None
            estimate = estimate_pose(corrs, query, tfp, self.pose_config)
        except cv2.error as e:
            log.warning(
                "matching failed; target skipped",
                extra={"extra": {"target": target.id, "error": str(e).strip()}},
            )
            return None
        log.debug(
            "pose estimate",
            extra={"extra": {
                "target": target.id,
                "correspondences": len(corrs),
                "inliers": estimate.inliers,
                "found": estimate.found,
            }},
        )
        if not estimate.found:
            return None
        return summarize_pose(
            estimate,
            target.reference_frame_size,
            frame.size,
            frame.original_size,
            target_id=target.id,
        )

    # -----------------------------
    # Entry points
    # -----------------------------

    def recognize_frame(self, frame: WorkingFrame, request_id: Optional[str] = None) -> MatchReport:
        if not self.catalog:
            return MatchReport.from_results([], request_id)
        query = self.extractor.extract(frame)
        log.debug("query fingerprint", extra={"extra": {"keypoints": len(query), **frame.to_meta()}})
        results: List[MatchResult] = []
        for target in self.catalog:
            r = self.match_target(query, frame, target)
            if r is not None:
                results.append(r)
        return MatchReport.from_results(results, request_id)

    def recognize(
        self,
        image: Union[bytes, np.ndarray],
        *,
        original_size: Optional[Tuple[int, int]] = None,
        applied: Optional[AppliedTransforms] = None,
        request_id: Optional[str] = None,
    ) -> MatchReport:
        """
        Full pipeline for one query image (encoded bytes or decoded array).
        Raises DecodeError for undecodable bytes.
        """
        frame = self.prepare(image, original_size=original_size, applied=applied)
        return self.recognize_frame(frame, request_id=request_id)
