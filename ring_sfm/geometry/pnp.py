"""
Perspective-n-Point (PnP) registration of a view against triangulated points.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np

from ring_sfm.sfm.data_structures import CameraPose
from ring_sfm.sfm.errors import DegenerateGeometryError, InsufficientCorrespondencesError

logger = logging.getLogger(__name__)

# EPnP needs 4 points; a couple more keep the RANSAC sample well posed.
MIN_PNP_POINTS = 6


def estimate_camera_pose_pnp(
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    reprojection_error: float = 2.0,
    confidence: float = 0.999,
    max_iterations: int = 2000,
) -> Tuple[CameraPose, np.ndarray]:
    """
    Estimate a camera pose from 3D-2D correspondences using PnP RANSAC.

    Args:
        K: Intrinsic camera matrix (3x3).
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding 2D points in image coordinates (N, 2).
        reprojection_error: RANSAC inlier threshold in pixels.
        confidence: RANSAC confidence.
        max_iterations: RANSAC iteration cap.

    Returns:
        Tuple of (pose, inlier_mask) where:
        - pose: World-to-camera CameraPose, refined on the inliers.
        - inlier_mask: Boolean array (N,) indicating inlier correspondences.

    Raises:
        InsufficientCorrespondencesError: Fewer than MIN_PNP_POINTS
            correspondences, before or after RANSAC.
        DegenerateGeometryError: If OpenCV finds no pose.
    """
    points_3d = np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_2d = np.ascontiguousarray(points_2d, dtype=np.float64).reshape(-1, 2)
    n = len(points_3d)
    if n < MIN_PNP_POINTS:
        raise InsufficientCorrespondencesError(n, MIN_PNP_POINTS, stage="track lookup")

    K = np.asarray(K, dtype=np.float64)
    success, rvec, tvec, inliers = cv2.solvePnPRansac(
        points_3d.reshape(-1, 1, 3),
        points_2d.reshape(-1, 1, 2),
        K,
        None,
        flags=cv2.SOLVEPNP_EPNP,
        reprojectionError=reprojection_error,
        confidence=confidence,
        iterationsCount=max_iterations,
    )
    if not success or inliers is None:
        raise DegenerateGeometryError("PnP RANSAC found no camera pose")

    inlier_mask = np.zeros(n, dtype=bool)
    inlier_mask[inliers.ravel()] = True
    num_inliers = int(inlier_mask.sum())
    if num_inliers < MIN_PNP_POINTS:
        raise InsufficientCorrespondencesError(num_inliers, MIN_PNP_POINTS, stage="PnP RANSAC")

    # Levenberg-Marquardt polish on the inlier set.
    rvec, tvec = cv2.solvePnPRefineLM(
        points_3d[inlier_mask].reshape(-1, 1, 3),
        points_2d[inlier_mask].reshape(-1, 1, 2),
        K,
        None,
        rvec,
        tvec,
    )

    R, _ = cv2.Rodrigues(rvec)
    pose = CameraPose(R=R, t=tvec.reshape(3))
    logger.debug(
        "PnP: %d/%d inliers, camera center %s",
        num_inliers,
        n,
        np.array2string(pose.center, precision=3),
    )
    return pose, inlier_mask


__all__ = ["estimate_camera_pose_pnp", "MIN_PNP_POINTS"]
