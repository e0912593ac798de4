"""
Non-linear refinement of a two-view relative pose.

Minimizes Sampson residuals over the inlier correspondences with a robust
loss, parameterizing rotation as a Rodrigues vector.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares

from ring_sfm.sfm.data_structures import orthonormalize

logger = logging.getLogger(__name__)


def pack_parameters(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """[rvec (3), t (3)] parameter vector."""
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return np.concatenate([rvec.ravel(), np.asarray(t, dtype=np.float64).ravel()])


def unpack_parameters(params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    R, _ = cv2.Rodrigues(params[:3].reshape(3, 1))
    t = params[3:6]
    norm = np.linalg.norm(t)
    return R, t / norm if norm > 0 else t


def sampson_residuals(params: np.ndarray, x1n: np.ndarray, x2n: np.ndarray) -> np.ndarray:
    """
    Signed Sampson residuals of normalized correspondences.

    Args:
        params: [rvec, t] parameter vector.
        x1n, x2n: Normalized camera coordinates (N, 2).

    Returns:
        1D array of residuals (one per correspondence).
    """
    R, t = unpack_parameters(params)
    tx = np.array([[0, -t[2], t[1]], [t[2], 0, -t[0]], [-t[1], t[0], 0]])
    E = tx @ R
    x1 = np.hstack([x1n, np.ones((len(x1n), 1))])
    x2 = np.hstack([x2n, np.ones((len(x2n), 1))])
    Ex1 = x1 @ E.T
    Etx2 = x2 @ E
    algebraic = np.sum(x2 * Ex1, axis=1)
    denom = np.sqrt(Ex1[:, 0] ** 2 + Ex1[:, 1] ** 2 + Etx2[:, 0] ** 2 + Etx2[:, 1] ** 2)
    return algebraic / np.maximum(denom, 1e-12)


def refine_relative_pose(
    R: np.ndarray,
    t: np.ndarray,
    x1n: np.ndarray,
    x2n: np.ndarray,
    max_nfev: int = 50,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Refine a relative pose (R, t) on inlier correspondences.

    Args:
        R: Initial rotation (3x3).
        t: Initial translation direction (3,).
        x1n, x2n: Inlier correspondences in normalized camera coordinates (N, 2).
        max_nfev: Maximum number of function evaluations.

    Returns:
        Tuple of (R, t): re-orthogonalized rotation and unit translation.
    """
    params = pack_parameters(R, t)
    initial = sampson_residuals(params, x1n, x2n)

    result = least_squares(
        sampson_residuals,
        params,
        args=(x1n, x2n),
        method="trf",
        loss="soft_l1",
        f_scale=1e-3,
        max_nfev=max_nfev,
    )
    R_refined, t_refined = unpack_parameters(result.x)

    logger.debug(
        "Pose refinement: status=%d, nfev=%d, rms %.3e -> %.3e",
        result.status,
        result.nfev,
        float(np.sqrt(np.mean(initial ** 2))),
        float(np.sqrt(np.mean(result.fun ** 2))),
    )
    return orthonormalize(R_refined), t_refined


__all__ = [
    "pack_parameters",
    "unpack_parameters",
    "sampson_residuals",
    "refine_relative_pose",
]
