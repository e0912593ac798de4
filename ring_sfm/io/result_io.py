"""
Result I/O utilities for handing a reconstruction to an external renderer.
"""

from __future__ import annotations

from typing import Dict

import numpy as np

from ring_sfm.sfm.data_structures import ReconstructionResult


def save_result_npz(output_path: str, result: ReconstructionResult) -> None:
    """
    Serialize a ReconstructionResult to a .npz file.

    Args:
        output_path: Path where the result will be saved (.npz file).
        result: Reconstruction to export.

    The archive holds `points_xyz` (N, 3), `points_colors` (N, 3) in [0, 1],
    `points_confident` (N,), `points_reproj_error` (N,), provenance as flat
    `prov_point_ids` / `prov_image_ids` / `prov_keypoint_ids` arrays, camera
    poses for views with a known or estimated pose, and per-pair summary
    arrays.
    """
    n_points = len(result.points)
    points_xyz = result.positions()
    points_colors = result.colors()
    points_confident = result.confidence_mask()
    points_reproj_error = np.array([pt.reprojection_error for pt in result.points], dtype=np.float64)

    prov_point_ids = []
    prov_image_ids = []
    prov_keypoint_ids = []
    for pt in result.points:
        for image_idx, keypoint_idx in sorted(pt.provenance):
            prov_point_ids.append(pt.id)
            prov_image_ids.append(image_idx)
            prov_keypoint_ids.append(keypoint_idx)

    # Results built by hand may omit view_indices; fall back to ring positions.
    view_indices = result.view_indices or tuple(range(len(result.poses)))
    posed = [pos for pos, pose in enumerate(result.poses) if pose is not None]
    pose_view_ids = [view_indices[pos] for pos in posed]
    camera_Rs = np.zeros((len(posed), 3, 3))
    camera_ts = np.zeros((len(posed), 3))
    for k, pos in enumerate(posed):
        camera_Rs[k] = result.poses[pos].R
        camera_ts[k] = result.poses[pos].t

    np.savez(
        output_path,
        points_xyz=points_xyz.reshape(n_points, 3),
        points_colors=points_colors.reshape(n_points, 3),
        points_confident=points_confident,
        points_reproj_error=points_reproj_error,
        prov_point_ids=np.array(prov_point_ids, dtype=int),
        prov_image_ids=np.array(prov_image_ids, dtype=int),
        prov_keypoint_ids=np.array(prov_keypoint_ids, dtype=int),
        pose_view_ids=np.array(pose_view_ids, dtype=int),
        camera_Rs=camera_Rs,
        camera_ts=camera_ts,
        pair_ids=np.array([d.pair for d in result.diagnostics], dtype=int).reshape(-1, 2),
        pair_inliers=np.array([d.num_inliers for d in result.diagnostics], dtype=int),
        pair_failed=np.array([d.failed for d in result.diagnostics], dtype=bool),
        state=np.array(result.state.value),
    )


def load_result_npz(input_path: str) -> Dict[str, np.ndarray]:
    """
    Load the arrays written by `save_result_npz`.

    Returns:
        Dictionary of array name -> array.
    """
    with np.load(input_path) as data:
        return {key: data[key] for key in data.files}


__all__ = ["save_result_npz", "load_result_npz"]
