"""
Fundamental matrix estimation using the normalized 8-point algorithm,
plus epipolar error measures shared by the two-view estimator.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from ring_sfm.sfm.errors import DegenerateGeometryError


def normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize 2D points by centering and scaling.

    Args:
        pts: Array of points (N, 2).

    Returns:
        Tuple of (normalized_pts, T) where:
        - normalized_pts: Normalized points (N, 2), mean distance sqrt(2).
        - T: Transformation matrix (3x3) that normalizes pts.
    """
    pts = np.asarray(pts, dtype=np.float64)
    mean = np.mean(pts, axis=0)
    centered = pts - mean
    mean_dist = np.mean(np.linalg.norm(centered, axis=1))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0

    T = np.array(
        [
            [scale, 0, -scale * mean[0]],
            [0, scale, -scale * mean[1]],
            [0, 0, 1],
        ],
        dtype=np.float64,
    )
    return centered * scale, T


def to_homogeneous(pts: np.ndarray) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64)
    return np.hstack([pts, np.ones((pts.shape[0], 1))])


def epipolar_design_matrix(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Rows of the linear system A f = 0 for x2^T F x1 = 0 (N x 9)."""
    x1, y1 = pts1[:, 0], pts1[:, 1]
    x2, y2 = pts2[:, 0], pts2[:, 1]
    ones = np.ones_like(x1)
    return np.stack(
        [x2 * x1, x2 * y1, x2, y2 * x1, y2 * y1, y2, x1, y1, ones],
        axis=1,
    )


def solve_epipolar_system(
    pts1: np.ndarray,
    pts2: np.ndarray,
    rank_tol: float = 1e-8,
) -> Tuple[np.ndarray, bool]:
    """
    Normalized linear solve for a 3x3 epipolar matrix (no rank constraint).

    Returns:
        Tuple of (M, well_posed) where M is denormalized and `well_posed` is
        False when the design matrix is rank deficient (e.g. coplanar or
        repeated points), in which case M is not unique.
    """
    pts1_norm, T1 = normalize_points(pts1)
    pts2_norm, T2 = normalize_points(pts2)
    A = epipolar_design_matrix(pts1_norm, pts2_norm)

    _, S, Vt = np.linalg.svd(A)
    # The solution is 1-D only if the 8th singular value is clearly non-zero.
    well_posed = len(S) >= 8 and S[7] > rank_tol * S[0]
    M = Vt[-1].reshape(3, 3)
    return T2.T @ M @ T1, bool(well_posed)


def constrain_F(F: np.ndarray) -> np.ndarray:
    """
    Enforce rank-2 constraint on fundamental matrix using SVD.

    Args:
        F: Fundamental matrix (3x3).

    Returns:
        Rank-2 constrained fundamental matrix (3x3).
    """
    U, S, Vt = np.linalg.svd(F)
    S[2] = 0
    return U @ np.diag(S) @ Vt


def estimate_fundamental_matrix(
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Estimate fundamental matrix using normalized 8-point algorithm.

    Args:
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Fundamental matrix F (3x3), scaled to unit Frobenius norm.

    Raises:
        ValueError: If fewer than 8 point correspondences are provided.
        DegenerateGeometryError: If the points do not determine F uniquely
            (e.g. coplanar or repeated points).
    """
    if len(pts1) < 8:
        raise ValueError(f"Need at least 8 point correspondences, got {len(pts1)}")

    pts1_norm, T1 = normalize_points(pts1)
    pts2_norm, T2 = normalize_points(pts2)
    A = epipolar_design_matrix(pts1_norm, pts2_norm)
    _, S, Vt = np.linalg.svd(A)
    if S[7] <= 1e-8 * S[0]:
        raise DegenerateGeometryError(
            f"Correspondences do not determine F (rank of design matrix < 8 for {len(pts1)} points)"
        )
    F = constrain_F(Vt[-1].reshape(3, 3))

    # Denormalize: F = T2^T @ F @ T1
    F = T2.T @ F @ T1
    return F / np.linalg.norm(F)


def fundamental_from_essential(E: np.ndarray, K1: np.ndarray, K2: np.ndarray) -> np.ndarray:
    """F = K2^-T @ E @ K1^-1."""
    return np.linalg.inv(K2).T @ E @ np.linalg.inv(K1)


def sampson_distance(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    First-order geometric epipolar error, in pixels.

    Args:
        F: Fundamental matrix (3x3) with x2^T F x1 = 0.
        pts1, pts2: Corresponding points (N, 2).

    Returns:
        Sampson distances (N,) (square root of the Sampson error).
    """
    x1 = to_homogeneous(pts1)
    x2 = to_homogeneous(pts2)
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    numerator = np.sum(x2 * Fx1, axis=1) ** 2
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        err = np.where(denominator > 0, numerator / denominator, np.inf)
    return np.sqrt(err)


__all__ = [
    "normalize_points",
    "to_homogeneous",
    "epipolar_design_matrix",
    "solve_epipolar_system",
    "estimate_fundamental_matrix",
    "constrain_F",
    "fundamental_from_essential",
    "sampson_distance",
]
