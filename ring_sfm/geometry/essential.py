"""
Essential matrix estimation, camera pose extraction and known-pose validation.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ring_sfm.ba.refinement import refine_relative_pose
from ring_sfm.geometry.fundamental import (
    estimate_fundamental_matrix,
    fundamental_from_essential,
    sampson_distance,
    solve_epipolar_system,
    to_homogeneous,
)
from ring_sfm.geometry.triangulation import triangulate_linear
from ring_sfm.sfm.config import GeometryConfig
from ring_sfm.sfm.data_structures import CameraPose
from ring_sfm.sfm.errors import (
    DegenerateGeometryError,
    EstimationTimeoutError,
    InsufficientCorrespondencesError,
)

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 8


@dataclass
class TwoViewGeometry:
    """Relative pose of view 2 with respect to view 1 and the inlier subset."""

    R: np.ndarray
    # Unit-length translation direction (scale is unrecoverable from two views).
    t: np.ndarray
    E: np.ndarray
    F: np.ndarray
    inlier_mask: np.ndarray
    num_iterations: int = 0
    mean_error: float = float("nan")
    pose_source: str = "estimated"

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))

    @property
    def relative_pose(self) -> CameraPose:
        return CameraPose(R=self.R, t=self.t)


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]_x."""
    x, y, z = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([[0, -z, y], [z, 0, -x], [-y, x, 0]], dtype=np.float64)


def compute_essential_matrix(K1: np.ndarray, F: np.ndarray, K2: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Compute essential matrix from fundamental matrix and camera intrinsics.

    Args:
        K1: Intrinsic matrix of the first camera (3x3).
        F: Fundamental matrix (3x3).
        K2: Intrinsic matrix of the second camera; defaults to K1.

    Returns:
        Essential matrix E (3x3), where E = K2^T @ F @ K1.
    """
    K2 = K1 if K2 is None else K2
    return K2.T @ F @ K1


def essential_from_pose(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return skew(t) @ R


def enforce_essential_constraint(E: np.ndarray) -> np.ndarray:
    """Project onto the essential manifold: singular values (1, 1, 0)."""
    U, _, Vt = np.linalg.svd(E)
    return U @ np.diag([1.0, 1.0, 0.0]) @ Vt


def decompose_essential_matrix(E: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """The four (R, t) candidates encoded by an essential matrix (unit t)."""
    U, _, Vt = np.linalg.svd(E)
    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt
    W = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=np.float64)
    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2]
    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def cheirality_mask(
    R: np.ndarray,
    t: np.ndarray,
    x1n: np.ndarray,
    x2n: np.ndarray,
) -> np.ndarray:
    """Points (normalized coordinates) that triangulate in front of both cameras."""
    P1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    P2 = np.hstack([R, t.reshape(3, 1)])
    X = triangulate_linear(P1, P2, x1n, x2n)
    z1 = X[:, 2]
    z2 = (X @ R.T + t.reshape(1, 3))[:, 2]
    with np.errstate(invalid="ignore"):
        return np.isfinite(z1) & (z1 > 0) & (z2 > 0)


def extract_RT_essential_matrix(
    E: np.ndarray,
    x1n: np.ndarray,
    x2n: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract camera rotation and translation from essential matrix.

    Args:
        E: Essential matrix (3x3).
        x1n: Normalized camera coordinates in the first view (N, 2).
        x2n: Normalized camera coordinates in the second view (N, 2).

    Returns:
        Tuple of (R, t, mask) where:
        - R: Rotation matrix (3x3) from first to second camera.
        - t: Unit translation vector (3,) from first to second camera.
        - mask: Boolean mask (N,) of points in front of both cameras.
    """
    best = None
    for R, t in decompose_essential_matrix(E):
        mask = cheirality_mask(R, t, x1n, x2n)
        if best is None or mask.sum() > best[2].sum():
            best = (R, t, mask)
    return best


def rotation_angle_deg(R_a: np.ndarray, R_b: np.ndarray) -> float:
    """Angle of the rotation taking R_b to R_a, in degrees."""
    cos_angle = (np.trace(R_a @ R_b.T) - 1.0) / 2.0
    return float(np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0))))


def normalize_image_points(K: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Pixel coordinates -> normalized camera coordinates (K^-1 x)."""
    x = to_homogeneous(pts) @ np.linalg.inv(K).T
    return x[:, :2] / x[:, 2:3]


def _adaptive_iterations(inlier_ratio: float, confidence: float, cap: int) -> int:
    good_sample = inlier_ratio ** SAMPLE_SIZE
    if good_sample <= 0:
        return cap
    denom = math.log(max(1.0 - good_sample, 1e-12))
    return max(1, min(cap, int(math.ceil(math.log(1.0 - confidence) / denom))))


class TwoViewEstimator:
    """
    Robust relative pose estimation between two calibrated views.

    RANSAC over minimal 8-point essential matrix fits in normalized camera
    coordinates, scored by Sampson distance in pixels.
    """

    def __init__(self, config: Optional[GeometryConfig] = None) -> None:
        self.config = config or GeometryConfig()

    def _fit(self, x1n: np.ndarray, x2n: np.ndarray) -> Tuple[np.ndarray, bool]:
        E, well_posed = solve_epipolar_system(x1n, x2n)
        if not well_posed:
            return E, False
        return enforce_essential_constraint(E), True

    def _score(self, E, K1, K2, pts1, pts2) -> Tuple[np.ndarray, np.ndarray]:
        F = fundamental_from_essential(E, K1, K2)
        err = sampson_distance(F, pts1, pts2)
        return err < self.config.ransac_threshold, err

    def estimate(
        self,
        pts1: np.ndarray,
        pts2: np.ndarray,
        K1: np.ndarray,
        K2: Optional[np.ndarray] = None,
    ) -> TwoViewGeometry:
        """
        Estimate the relative pose of view 2 with respect to view 1.

        Args:
            pts1, pts2: Matched pixel coordinates (N, 2).
            K1, K2: Intrinsic matrices (K2 defaults to K1).

        Returns:
            TwoViewGeometry with unit translation and inlier mask
            (RANSAC inliers that also pass the cheirality check).

        Raises:
            InsufficientCorrespondencesError: Fewer than the minimal sample
                survive, before or after inlier filtering.
            DegenerateGeometryError: No non-degenerate model could be fitted
                (e.g. coplanar or repeated points).
            EstimationTimeoutError: The time budget ran out before any model
                was fitted.
        """
        cfg = self.config
        K2 = K1 if K2 is None else K2
        pts1 = np.asarray(pts1, dtype=np.float64)
        pts2 = np.asarray(pts2, dtype=np.float64)
        n = len(pts1)
        required = max(SAMPLE_SIZE, cfg.min_correspondences)
        if n < required:
            raise InsufficientCorrespondencesError(n, required)

        x1n = normalize_image_points(K1, pts1)
        x2n = normalize_image_points(K2, pts2)

        rng = np.random.default_rng(cfg.seed)
        best_E = None
        best_mask = None
        best_count = -1
        best_error = np.inf
        needed = cfg.max_iterations
        iterations = 0
        degenerate = 0
        timed_out = False
        start = time.monotonic()

        while iterations < needed:
            if cfg.time_budget is not None and time.monotonic() - start >= cfg.time_budget:
                timed_out = True
                logger.warning(
                    "RANSAC time budget of %.2fs exceeded after %d iterations",
                    cfg.time_budget,
                    iterations,
                )
                break
            iterations += 1
            sample = rng.choice(n, SAMPLE_SIZE, replace=False)
            E, ok = self._fit(x1n[sample], x2n[sample])
            if not ok:
                degenerate += 1
                continue
            mask, err = self._score(E, K1, K2, pts1, pts2)
            count = int(mask.sum())
            mean_err = float(err[mask].mean()) if count else np.inf
            if count > best_count or (count == best_count and mean_err < best_error):
                best_E, best_mask, best_count, best_error = E, mask, count, mean_err
                needed = _adaptive_iterations(count / n, cfg.confidence, cfg.max_iterations)

        if best_E is None:
            if timed_out:
                raise EstimationTimeoutError(
                    f"RANSAC time budget of {cfg.time_budget:.3f}s ran out before any model was found"
                )
            if degenerate == iterations and iterations > 0:
                raise DegenerateGeometryError(
                    f"All {iterations} RANSAC samples were degenerate (coplanar or repeated points)"
                )
            raise InsufficientCorrespondencesError(0, required, stage="RANSAC")
        if best_count < required:
            raise InsufficientCorrespondencesError(best_count, required, stage="RANSAC inlier filtering")

        # Refit on all inliers in pixel space; keep whichever model explains more points.
        F_refit = estimate_fundamental_matrix(pts1[best_mask], pts2[best_mask])
        E_refit = enforce_essential_constraint(compute_essential_matrix(K1, F_refit, K2))
        refit_mask, _ = self._score(E_refit, K1, K2, pts1, pts2)
        if refit_mask.sum() >= best_count:
            best_E, best_mask = E_refit, refit_mask

        R, t, front = extract_RT_essential_matrix(best_E, x1n[best_mask], x2n[best_mask])
        inlier_mask = np.zeros(n, dtype=bool)
        inlier_mask[np.flatnonzero(best_mask)[front]] = True
        num_inliers = int(inlier_mask.sum())
        if num_inliers < required:
            raise InsufficientCorrespondencesError(num_inliers, required, stage="cheirality check")

        if cfg.refine:
            R, t = refine_relative_pose(R, t, x1n[inlier_mask], x2n[inlier_mask])

        E = essential_from_pose(R, t)
        F = fundamental_from_essential(E, K1, K2)
        errors = sampson_distance(F, pts1[inlier_mask], pts2[inlier_mask])

        logger.debug(
            "RANSAC: %d iterations (%d degenerate), %d/%d inliers, mean Sampson error %.3f px",
            iterations,
            degenerate,
            num_inliers,
            n,
            float(errors.mean()),
        )
        return TwoViewGeometry(
            R=R,
            t=t / np.linalg.norm(t),
            E=E,
            F=F,
            inlier_mask=inlier_mask,
            num_iterations=iterations,
            mean_error=float(errors.mean()),
            pose_source="estimated",
        )

    def validate(
        self,
        pts1: np.ndarray,
        pts2: np.ndarray,
        K1: np.ndarray,
        K2: np.ndarray,
        pose1: CameraPose,
        pose2: CameraPose,
    ) -> TwoViewGeometry:
        """
        Check correspondences against known camera poses.

        Keeps correspondences whose Sampson distance to the epipolar geometry
        implied by the poses is below the RANSAC threshold and that lie in
        front of both cameras.

        Raises:
            DegenerateGeometryError: If the two camera centers coincide.
            InsufficientCorrespondencesError: If too few correspondences agree.
        """
        cfg = self.config
        pts1 = np.asarray(pts1, dtype=np.float64)
        pts2 = np.asarray(pts2, dtype=np.float64)
        n = len(pts1)
        required = max(SAMPLE_SIZE, cfg.min_correspondences)
        if n < required:
            raise InsufficientCorrespondencesError(n, required)

        relative = pose2.relative_to(pose1)
        baseline = float(np.linalg.norm(relative.t))
        if baseline < 1e-12:
            raise DegenerateGeometryError("Known poses share the same camera center")

        E = essential_from_pose(relative.R, relative.t)
        F = fundamental_from_essential(E, K1, K2)
        errors = sampson_distance(F, pts1, pts2)
        mask = errors < cfg.ransac_threshold

        x1n = normalize_image_points(K1, pts1)
        x2n = normalize_image_points(K2, pts2)
        mask &= cheirality_mask(relative.R, relative.t, x1n, x2n)

        num_inliers = int(mask.sum())
        if num_inliers < required:
            raise InsufficientCorrespondencesError(num_inliers, required, stage="epipolar validation")

        return TwoViewGeometry(
            R=relative.R,
            t=relative.t / baseline,
            E=E,
            F=F,
            inlier_mask=mask,
            num_iterations=0,
            mean_error=float(errors[mask].mean()),
            pose_source="known",
        )


__all__ = [
    "TwoViewGeometry",
    "TwoViewEstimator",
    "compute_essential_matrix",
    "essential_from_pose",
    "enforce_essential_constraint",
    "decompose_essential_matrix",
    "extract_RT_essential_matrix",
    "cheirality_mask",
    "rotation_angle_deg",
    "normalize_image_points",
    "skew",
]
