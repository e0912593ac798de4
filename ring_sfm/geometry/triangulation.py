"""
3D point triangulation from two or more camera views (linear DLT).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ring_sfm.sfm.config import TriangulationConfig
from ring_sfm.sfm.errors import DegenerateTriangulationError

logger = logging.getLogger(__name__)

# |w| relative to the homogeneous solution norm below which the point is at infinity.
_MIN_HOMOGENEOUS = 1e-12


@dataclass
class TriangulatedPoint:
    """A triangulated position with its per-view reprojection errors."""

    xyz: np.ndarray
    # (N,) pixel error in each contributing view.
    reprojection_errors: np.ndarray
    low_confidence: bool
    # Second-smallest / largest singular value of the DLT system.
    singular_ratio: float

    @property
    def max_error(self) -> float:
        return float(np.max(self.reprojection_errors)) if self.reprojection_errors.size else 0.0


def point_depth(P: np.ndarray, X: np.ndarray) -> float:
    """Depth of world point X (3,) in front of camera P (positive = in front)."""
    Xh = np.append(X, 1.0)
    return float((P[2] @ Xh) * np.sign(np.linalg.det(P[:, :3])))


def project(P: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Project (N, 3) or (3,) world points with a 3x4 matrix to pixel coordinates."""
    X = np.atleast_2d(np.asarray(X, dtype=np.float64))
    Xh = np.hstack([X, np.ones((X.shape[0], 1))])
    x = Xh @ P.T
    return x[:, :2] / x[:, 2:3]


def reprojection_errors(
    projections: Sequence[np.ndarray],
    X: np.ndarray,
    points_2d: Sequence[np.ndarray],
) -> np.ndarray:
    """Pixel distance between each observation and the projection of X (3,)."""
    return np.array(
        [
            float(np.linalg.norm(project(P, X)[0] - np.asarray(uv, dtype=np.float64)))
            for P, uv in zip(projections, points_2d)
        ]
    )


def _dlt_system(projections: Sequence[np.ndarray], points_2d: Sequence[np.ndarray]) -> np.ndarray:
    rows = []
    for P, uv in zip(projections, points_2d):
        u, v = float(uv[0]), float(uv[1])
        rows.append(u * P[2] - P[0])
        rows.append(v * P[2] - P[1])
    A = np.array(rows, dtype=np.float64)
    # Unit rows so no single view dominates the conditioning measure.
    norms = np.linalg.norm(A, axis=1, keepdims=True)
    return A / np.where(norms > 0, norms, 1.0)


def triangulate_point(
    projections: Sequence[np.ndarray],
    points_2d: Sequence[np.ndarray],
    config: Optional[TriangulationConfig] = None,
) -> TriangulatedPoint:
    """
    Triangulate one point seen in N >= 2 views.

    Args:
        projections: 3x4 camera projection matrices, one per view.
        points_2d: Matching pixel observations (2,), one per view.
        config: Conditioning and reprojection thresholds.

    Returns:
        TriangulatedPoint; `low_confidence` is set when the reprojection error
        exceeds the threshold in any view or the point is behind a camera.

    Raises:
        DegenerateTriangulationError: If the rays are (nearly) parallel or
            the solution lies at infinity.
    """
    cfg = config or TriangulationConfig()
    if len(projections) < 2 or len(projections) != len(points_2d):
        raise ValueError("Need one observation per projection and at least two views")

    A = _dlt_system(projections, points_2d)
    _, S, Vt = np.linalg.svd(A)
    ratio = float(S[2] / S[0]) if S[0] > 0 else 0.0
    if ratio < cfg.min_singular_ratio:
        raise DegenerateTriangulationError(
            f"Ill-conditioned triangulation (singular value ratio {ratio:.3e} "
            f"< {cfg.min_singular_ratio:.1e}); baseline too small"
        )

    Xh = Vt[-1]
    if abs(Xh[3]) < _MIN_HOMOGENEOUS * np.linalg.norm(Xh):
        raise DegenerateTriangulationError("Triangulated point lies at infinity")
    xyz = Xh[:3] / Xh[3]

    errors = reprojection_errors(projections, xyz, points_2d)
    in_front = all(point_depth(P, xyz) > 0 for P in projections)
    low_confidence = bool(np.any(errors > cfg.reprojection_threshold) or not in_front)

    return TriangulatedPoint(
        xyz=xyz,
        reprojection_errors=errors,
        low_confidence=low_confidence,
        singular_ratio=ratio,
    )


def triangulate_linear(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Vectorized two-view DLT without conditioning checks.

    Returns:
        (N, 3) points; rows at infinity are filled with NaN.
    """
    n = len(pts1)
    if n == 0:
        return np.zeros((0, 3))
    A = np.empty((n, 4, 4), dtype=np.float64)
    A[:, 0] = pts1[:, 0:1] * P1[2] - P1[0]
    A[:, 1] = pts1[:, 1:2] * P1[2] - P1[1]
    A[:, 2] = pts2[:, 0:1] * P2[2] - P2[0]
    A[:, 3] = pts2[:, 1:2] * P2[2] - P2[1]
    _, _, Vt = np.linalg.svd(A)
    Xh = Vt[:, -1, :]
    w = Xh[:, 3:4]
    with np.errstate(divide="ignore", invalid="ignore"):
        X = np.where(np.abs(w) > _MIN_HOMOGENEOUS, Xh[:, :3] / w, np.nan)
    return X


def triangulate_matches(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
    config: Optional[TriangulationConfig] = None,
) -> Tuple[List[Optional[TriangulatedPoint]], List[int]]:
    """
    Triangulate matched 2D correspondences between two views.

    Args:
        P1, P2: Projection matrices (3x4).
        pts1, pts2: Matched pixel coordinates (N, 2).
        config: Triangulation thresholds.

    Returns:
        Tuple of (results, degenerate) where:
        - results: One TriangulatedPoint per match, or None where degenerate.
        - degenerate: Indices of matches that raised DegenerateTriangulationError.
    """
    results: List[Optional[TriangulatedPoint]] = []
    degenerate: List[int] = []
    for i in range(len(pts1)):
        try:
            results.append(triangulate_point([P1, P2], [pts1[i], pts2[i]], config))
        except DegenerateTriangulationError:
            results.append(None)
            degenerate.append(i)

    if degenerate:
        logger.debug("%d of %d matches were degenerate", len(degenerate), len(pts1))
    return results, degenerate


__all__ = [
    "TriangulatedPoint",
    "triangulate_point",
    "triangulate_linear",
    "triangulate_matches",
    "reprojection_errors",
    "project",
    "point_depth",
]
