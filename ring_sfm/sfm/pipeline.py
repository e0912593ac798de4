"""
Reconstruction pipeline over an ordered ring of calibrated views.

Stages run in order (extract -> match -> estimate -> triangulate ->
aggregate). Work inside a stage is spread over a thread pool; only the
aggregation step writes to the shared point cloud. Per-pair failures are
recorded, and the run is marked Failed only when too few pairs succeed.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from ring_sfm.features.keypoints import SiftExtractor
from ring_sfm.features.matching import DescriptorMatcher
from ring_sfm.geometry.essential import TwoViewEstimator, TwoViewGeometry, rotation_angle_deg
from ring_sfm.geometry.pnp import MIN_PNP_POINTS, estimate_camera_pose_pnp
from ring_sfm.geometry.triangulation import triangulate_matches
from ring_sfm.sfm.aggregation import PointCloud
from ring_sfm.sfm.config import ReconstructionConfig
from ring_sfm.sfm.data_structures import (
    CameraPose,
    Correspondence,
    FeatureSet,
    Image,
    PairDiagnostics,
    PipelineState,
    Point3D,
    ReconstructionResult,
    View,
)
from ring_sfm.sfm.errors import PipelineFailure, SfmError

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class _Cancelled(Exception):
    """Raised inside a worker when cancellation was requested."""


def _matched_points(
    features_a: FeatureSet,
    features_b: FeatureSet,
    matches: Sequence[Correspondence],
) -> Tuple[np.ndarray, np.ndarray]:
    if not matches:
        return np.zeros((0, 2)), np.zeros((0, 2))
    pts_a = features_a.points()[[m.query_idx for m in matches]]
    pts_b = features_b.points()[[m.train_idx for m in matches]]
    return pts_a, pts_b


class FeatureExtractor(Protocol):
    def extract(self, image: Image) -> FeatureSet:
        ...


class Matcher(Protocol):
    def match(self, descriptors_a: np.ndarray, descriptors_b: np.ndarray) -> List[Correspondence]:
        ...


@dataclass
class _PairWork:
    """Mutable per-pair state carried between stages (positions, not view ids)."""

    a: int
    b: int
    diagnostics: PairDiagnostics
    matches: List[Correspondence] = field(default_factory=list)
    geometry: Optional[TwoViewGeometry] = None

    @property
    def failed(self) -> bool:
        return self.diagnostics.failure_reason is not None

    def fail(self, reason: str) -> None:
        if self.diagnostics.failure_reason is None:
            self.diagnostics.failure_reason = reason


class ReconstructionPipeline:
    """
    Sparse reconstruction of a camera ring.

    The extractor and matcher are any objects providing `extract(image)` and
    `match(descriptors_a, descriptors_b)`; they default to SiftExtractor and
    DescriptorMatcher built from the config.
    """

    def __init__(
        self,
        config: Optional[ReconstructionConfig] = None,
        extractor: Optional[FeatureExtractor] = None,
        matcher: Optional[Matcher] = None,
        estimator: Optional[TwoViewEstimator] = None,
    ) -> None:
        self.config = config or ReconstructionConfig()
        self.extractor = extractor or SiftExtractor(self.config.extractor)
        self.matcher = matcher or DescriptorMatcher(self.config.matcher)
        self.estimator = estimator or TwoViewEstimator(self.config.geometry)

        self._state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self._cancel = threading.Event()
        self._cloud = PointCloud(self.config.pipeline.dedup_epsilon)

    # ------------------------------------------------------------------
    # State and control
    # ------------------------------------------------------------------
    @property
    def state(self) -> PipelineState:
        return self._state

    def _transition(self, state: PipelineState) -> None:
        logger.debug("Pipeline state %s -> %s", self._state.value, state.value)
        self._state = state
        self.history.append(state)

    def cancel(self) -> None:
        """Request cooperative cancellation; checked between images and pairs."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def aggregated_points(self) -> List[Point3D]:
        """Deduplicated view of every point aggregated so far."""
        return self._cloud.finalize()

    def view_pairs(self, n_views: int) -> List[Tuple[int, int]]:
        """
        Pairs of ring positions to process.

        Consecutive neighbours, the closing pair (last, first) when
        `close_ring` and there are more than two views, and optionally
        (i, i + pair_stride) pairs.
        """
        cfg = self.config.pipeline
        candidates = [(i, i + 1) for i in range(n_views - 1)]
        if cfg.close_ring and n_views > 2:
            candidates.append((n_views - 1, 0))
        if cfg.pair_stride is not None:
            for i in range(n_views):
                j = i + cfg.pair_stride
                if j < n_views:
                    candidates.append((i, j))
                elif cfg.close_ring and n_views > cfg.pair_stride:
                    candidates.append((i, j % n_views))

        pairs = []
        seen = set()
        for a, b in candidates:
            key = frozenset((a, b))
            if a == b or key in seen:
                continue
            seen.add(key)
            pairs.append((a, b))
        return pairs

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _extract_one(self, view: View) -> FeatureSet:
        if self._cancel.is_set():
            raise _Cancelled()
        if view.image is None:
            raise SfmError(f"View {view.index} has no image")
        return self.extractor.extract(view.image)

    def _extract_all(
        self,
        views: Sequence[View],
        executor: ThreadPoolExecutor,
    ) -> Tuple[Dict[int, FeatureSet], Dict[int, str]]:
        features: Dict[int, FeatureSet] = {}
        errors: Dict[int, str] = {}
        futures = {executor.submit(self._extract_one, view): pos for pos, view in enumerate(views)}
        for future in as_completed(futures):
            pos = futures[future]
            try:
                features[pos] = future.result()
            except _Cancelled:
                errors[pos] = CANCELLED
            except SfmError as e:
                errors[pos] = f"{type(e).__name__}: {e}"
                logger.warning("Feature extraction failed for view %d: %s", views[pos].index, e)
            else:
                logger.debug("View %d: %d keypoints", views[pos].index, len(features[pos]))
        return features, errors

    def _match_pair(self, work: _PairWork, features: Dict[int, FeatureSet]) -> None:
        if self._cancel.is_set():
            work.fail(CANCELLED)
            return
        start = time.monotonic()
        work.matches = self.matcher.match(features[work.a].descriptors, features[work.b].descriptors)
        work.diagnostics.num_matches = len(work.matches)
        work.diagnostics.elapsed += time.monotonic() - start

    def _estimate_pair(self, work: _PairWork, views: Sequence[View], features: Dict[int, FeatureSet]) -> None:
        if self._cancel.is_set():
            work.fail(CANCELLED)
            return
        start = time.monotonic()
        view_a, view_b = views[work.a], views[work.b]
        pts_a, pts_b = _matched_points(features[work.a], features[work.b], work.matches)
        diag = work.diagnostics
        try:
            if view_a.pose is not None and view_b.pose is not None:
                work.geometry = self.estimator.validate(
                    pts_a, pts_b, view_a.K, view_b.K, view_a.pose, view_b.pose
                )
                if self.config.geometry.cross_validate:
                    try:
                        estimated = self.estimator.estimate(pts_a, pts_b, view_a.K, view_b.K)
                        diag.rotation_error_deg = rotation_angle_deg(estimated.R, work.geometry.R)
                    except SfmError as e:
                        logger.debug("Cross-validation of pair %s skipped: %s", diag.pair, e)
            else:
                work.geometry = self.estimator.estimate(pts_a, pts_b, view_a.K, view_b.K)
        except SfmError as e:
            work.fail(f"{type(e).__name__}: {e}")
            logger.warning("Pair %s: geometry failed: %s", diag.pair, e)
        else:
            diag.num_inliers = work.geometry.num_inliers
            diag.pose_source = work.geometry.pose_source
            logger.debug(
                "Pair %s: %d matches, %d inliers (%s pose)",
                diag.pair,
                diag.num_matches,
                diag.num_inliers,
                diag.pose_source,
            )
        diag.elapsed += time.monotonic() - start

    def _resolve_poses(
        self,
        views: Sequence[View],
        works: List[_PairWork],
        features: Dict[int, FeatureSet],
    ) -> List[Optional[CameraPose]]:
        """
        Fill in missing poses by walking the ring.

        Known poses are used as given. The first missing pose is chained from
        its predecessor with the estimated relative pose, which fixes a unit
        baseline. Every later missing pose is registered by PnP against the
        points already triangulated along the chain, so all views share that
        one scale. When too few tracked points are seen, the view falls back
        to chaining and the scale restarts.
        """
        poses: List[Optional[CameraPose]] = [view.pose for view in views]
        if all(pose is not None for pose in poses):
            return poses

        by_pair = {(w.a, w.b): w for w in works}
        # (ring position, keypoint index) -> triangulated world point
        tracks: Dict[Tuple[int, int], np.ndarray] = {}
        if poses[0] is None:
            poses[0] = CameraPose.identity()
        for pos in range(1, len(views)):
            work = by_pair.get((pos - 1, pos))
            usable = (
                work is not None
                and not work.failed
                and work.geometry is not None
                and poses[pos - 1] is not None
            )
            if poses[pos] is None:
                if not usable:
                    logger.warning("No pose available for view %d", views[pos].index)
                    continue
                poses[pos] = self._register_view(pos, work, views, features, poses, tracks)
            if usable and poses[pos] is not None:
                self._add_tracks(work, views, features, poses, tracks)
        return poses

    def _register_view(
        self,
        pos: int,
        work: _PairWork,
        views: Sequence[View],
        features: Dict[int, FeatureSet],
        poses: List[Optional[CameraPose]],
        tracks: Dict[Tuple[int, int], np.ndarray],
    ) -> Optional[CameraPose]:
        inliers = [m for m, keep in zip(work.matches, work.geometry.inlier_mask) if keep]
        tracked = [m for m in inliers if (pos - 1, m.query_idx) in tracks]
        if len(tracked) >= MIN_PNP_POINTS:
            points_3d = np.array([tracks[(pos - 1, m.query_idx)] for m in tracked])
            points_2d = features[pos].points()[[m.train_idx for m in tracked]]
            try:
                pose, mask = estimate_camera_pose_pnp(
                    views[pos].K,
                    points_3d,
                    points_2d,
                    reprojection_error=self.config.triangulation.reprojection_threshold,
                )
            except SfmError as e:
                logger.warning("View %d: PnP registration failed: %s", views[pos].index, e)
                return None
            logger.info(
                "View %d registered by PnP (%d/%d tracked points)",
                views[pos].index,
                int(mask.sum()),
                len(tracked),
            )
            return pose

        if tracks:
            logger.warning(
                "View %d sees only %d tracked points; chaining with a new unit baseline",
                views[pos].index,
                len(tracked),
            )
        return poses[pos - 1].compose(work.geometry.relative_pose)

    def _add_tracks(
        self,
        work: _PairWork,
        views: Sequence[View],
        features: Dict[int, FeatureSet],
        poses: List[Optional[CameraPose]],
        tracks: Dict[Tuple[int, int], np.ndarray],
    ) -> None:
        inliers = [m for m, keep in zip(work.matches, work.geometry.inlier_mask) if keep]
        pts_a, pts_b = _matched_points(features[work.a], features[work.b], inliers)
        P_a = poses[work.a].projection_matrix(views[work.a].K)
        P_b = poses[work.b].projection_matrix(views[work.b].K)
        results, _ = triangulate_matches(P_a, P_b, pts_a, pts_b, self.config.triangulation)
        for match, tri in zip(inliers, results):
            if tri is None or tri.low_confidence:
                continue
            tracks.setdefault((work.a, match.query_idx), tri.xyz)
            tracks.setdefault((work.b, match.train_idx), tri.xyz)

    def _triangulate_pair(
        self,
        work: _PairWork,
        views: Sequence[View],
        features: Dict[int, FeatureSet],
        poses: List[Optional[CameraPose]],
    ) -> List[Point3D]:
        if self._cancel.is_set():
            work.fail(CANCELLED)
            return []
        start = time.monotonic()
        diag = work.diagnostics
        pose_a, pose_b = poses[work.a], poses[work.b]
        if pose_a is None or pose_b is None:
            work.fail("pose unavailable")
            return []

        view_a, view_b = views[work.a], views[work.b]
        feats_a, feats_b = features[work.a], features[work.b]
        if view_a.pose is None or view_b.pose is None:
            # Resolved poses must agree with this pair's own matches.
            pts_a, pts_b = _matched_points(feats_a, feats_b, work.matches)
            try:
                checked = self.estimator.validate(pts_a, pts_b, view_a.K, view_b.K, pose_a, pose_b)
            except SfmError as e:
                work.fail(f"resolved poses rejected: {type(e).__name__}: {e}")
                logger.warning("Pair %s: resolved poses rejected: %s", diag.pair, e)
                diag.elapsed += time.monotonic() - start
                return []
            work.geometry = replace(
                work.geometry, inlier_mask=work.geometry.inlier_mask & checked.inlier_mask
            )
            diag.num_inliers = work.geometry.num_inliers

        inliers = [m for m, keep in zip(work.matches, work.geometry.inlier_mask) if keep]
        pts_a, pts_b = _matched_points(feats_a, feats_b, inliers)

        P_a = pose_a.projection_matrix(view_a.K)
        P_b = pose_b.projection_matrix(view_b.K)
        results, degenerate = triangulate_matches(P_a, P_b, pts_a, pts_b, self.config.triangulation)

        points = []
        for match, tri in zip(inliers, results):
            if tri is None:
                continue
            color = 0.5 * (feats_a.colors[match.query_idx] + feats_b.colors[match.train_idx])
            points.append(
                Point3D(
                    id=-1,
                    xyz=tri.xyz,
                    color=color,
                    provenance=frozenset(
                        {(view_a.index, match.query_idx), (view_b.index, match.train_idx)}
                    ),
                    low_confidence=tri.low_confidence,
                    reprojection_error=tri.max_error,
                )
            )

        diag.num_triangulated = len(points)
        diag.num_degenerate = len(degenerate)
        diag.num_low_confidence = sum(pt.low_confidence for pt in points)
        if points:
            errors = np.array([pt.reprojection_error for pt in points])
            diag.reprojection_mean = float(errors.mean())
            diag.reprojection_median = float(np.median(errors))
            diag.reprojection_max = float(errors.max())
        diag.elapsed += time.monotonic() - start
        if points and diag.num_low_confidence == len(points):
            work.fail(f"all {len(points)} triangulated points are low-confidence")
            logger.warning("Pair %s: all %d points are low-confidence", diag.pair, len(points))
            return []
        return points

    # ------------------------------------------------------------------
    # Failure policy
    # ------------------------------------------------------------------
    def _failure_message(self, works: List[_PairWork]) -> Optional[str]:
        cfg = self.config.pipeline
        processed = [w for w in works if w.diagnostics.failure_reason != CANCELLED]
        if not processed:
            return None
        n_ok = sum(not w.failed for w in processed)
        ratio = n_ok / len(processed)
        if ratio < cfg.min_success_ratio:
            return (
                f"Only {n_ok}/{len(processed)} view pairs succeeded "
                f"(ratio {ratio:.2f} < {cfg.min_success_ratio:.2f})"
            )
        if cfg.max_consecutive_failures is not None:
            run = longest = 0
            for w in processed:
                run = run + 1 if w.failed else 0
                longest = max(longest, run)
            if longest > cfg.max_consecutive_failures:
                return (
                    f"{longest} consecutive view pairs failed "
                    f"(limit {cfg.max_consecutive_failures})"
                )
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self, views: Sequence[View], raise_on_failure: bool = False) -> ReconstructionResult:
        """
        Reconstruct a point cloud from an ordered ring of views.

        Args:
            views: Views in ring order; `index` values must be unique.
            raise_on_failure: Raise PipelineFailure instead of returning a
                Failed result.

        Returns:
            ReconstructionResult with deduplicated points, per-pair diagnostics
            and the poses used for triangulation.
        """
        if self._state is not PipelineState.IDLE:
            raise RuntimeError(f"Pipeline already ran (state {self._state.value})")
        if len({v.index for v in views}) != len(views):
            raise ValueError("View indices must be unique")

        works: List[_PairWork] = []
        poses: List[Optional[CameraPose]] = [v.pose for v in views]
        try:
            with ThreadPoolExecutor(max_workers=self.config.pipeline.max_workers) as executor:
                self._transition(PipelineState.EXTRACTING_FEATURES)
                logger.info("Extracting features from %d views", len(views))
                features, extraction_errors = self._extract_all(views, executor)
                # Later stages need only intrinsics and poses.
                views = [replace(view, image=None) for view in views]

                for a, b in self.view_pairs(len(views)):
                    work = _PairWork(a, b, PairDiagnostics(pair=(views[a].index, views[b].index)))
                    for pos in (a, b):
                        if pos in extraction_errors:
                            reason = extraction_errors[pos]
                            work.fail(reason if reason == CANCELLED else f"view {views[pos].index}: {reason}")
                    works.append(work)

                self._transition(PipelineState.MATCHING_PAIRS)
                active = [w for w in works if not w.failed]
                logger.info("Matching %d view pairs", len(active))
                list(executor.map(lambda w: self._match_pair(w, features), active))

                self._transition(PipelineState.ESTIMATING_GEOMETRY)
                active = [w for w in works if not w.failed]
                list(executor.map(lambda w: self._estimate_pair(w, views, features), active))
                poses = self._resolve_poses(views, works, features)

                self._transition(PipelineState.TRIANGULATING)
                active = [w for w in works if not w.failed]
                futures = [
                    executor.submit(self._triangulate_pair, w, views, features, poses) for w in active
                ]
                # Single writer: only this thread adds to the cloud.
                for future in as_completed(futures):
                    self._cloud.add(future.result())
        except Exception:
            self._transition(PipelineState.FAILED)
            raise

        self._transition(PipelineState.AGGREGATING)
        points = self._cloud.finalize()

        message = self._failure_message(works)
        diagnostics = tuple(w.diagnostics for w in works)
        if message is None:
            self._transition(PipelineState.DONE)
            result = ReconstructionResult(
                points=tuple(points),
                diagnostics=diagnostics,
                poses=tuple(poses),
                state=PipelineState.DONE,
                cancelled=self.cancelled,
                view_indices=tuple(v.index for v in views),
            )
            logger.info(
                "Reconstruction done: %d points from %d/%d pairs",
                len(points),
                sum(not w.failed for w in works),
                len(works),
            )
            return result

        self._transition(PipelineState.FAILED)
        failed_pairs = [(w.diagnostics.pair, w.diagnostics.failure_reason) for w in works if w.failed]
        failure = PipelineFailure(message, failed_pairs)
        result = ReconstructionResult(
            points=tuple(points),
            diagnostics=diagnostics,
            poses=tuple(poses),
            state=PipelineState.FAILED,
            failure=failure,
            cancelled=self.cancelled,
            view_indices=tuple(v.index for v in views),
        )
        failure.result = result
        logger.error("Reconstruction failed: %s; kept %d points", message, len(points))
        if raise_on_failure:
            raise failure
        return result


def reconstruct(
    views: Sequence[View],
    config: Optional[ReconstructionConfig] = None,
) -> ReconstructionResult:
    """Run a fresh pipeline with default components."""
    return ReconstructionPipeline(config).run(views)


__all__ = [
    "ReconstructionPipeline",
    "FeatureExtractor",
    "Matcher",
    "reconstruct",
]
