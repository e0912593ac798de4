"""
Shared synthetic scenes for the test suite.
"""

from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np
import pytest

from ring_sfm.geometry.triangulation import project
from ring_sfm.sfm.data_structures import CameraPose, FeatureSet, Image, Keypoint, View
from ring_sfm.sfm.errors import ExtractionError

WIDTH, HEIGHT = 640, 480


def make_K(f: float = 800.0) -> np.ndarray:
    return np.array([[f, 0.0, WIDTH / 2], [0.0, f, HEIGHT / 2], [0.0, 0.0, 1.0]])


def look_at(center, target=(0.0, 0.0, 0.0), up=(0.0, -1.0, 0.0)) -> CameraPose:
    """Pose of a camera at `center` whose optical axis points at `target`."""
    center = np.asarray(center, dtype=np.float64)
    z = np.asarray(target, dtype=np.float64) - center
    z /= np.linalg.norm(z)
    x = np.cross(np.asarray(up, dtype=np.float64), z)
    if np.linalg.norm(x) < 1e-9:
        x = np.cross(np.array([1.0, 0.0, 0.0]), z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.stack([x, y, z])
    return CameraPose(R=R, t=-R @ center)


def ring_poses(n: int, radius: float = 5.0, height: float = 1.0) -> List[CameraPose]:
    poses = []
    for k in range(n):
        angle = 2 * np.pi * k / n
        center = (radius * np.cos(angle), height, radius * np.sin(angle))
        poses.append(look_at(center))
    return poses


def cube_corners(half: float = 0.5) -> np.ndarray:
    return np.array(
        [[sx, sy, sz] for sx in (-half, half) for sy in (-half, half) for sz in (-half, half)],
        dtype=np.float64,
    )


class SyntheticExtractor:
    """
    Projects known world points into each registered image.

    Every world point carries a fixed descriptor and color, so matching and
    geometry run on exact data. Keypoint order is shuffled per view.
    """

    def __init__(self, points: np.ndarray, K: np.ndarray, seed: int = 0) -> None:
        self.points = np.asarray(points, dtype=np.float64)
        self.K = K
        rng = np.random.default_rng(seed)
        self.descriptors = rng.normal(size=(len(points), 128)).astype(np.float32)
        self.colors = rng.uniform(size=(len(points), 3))
        self._poses: Dict[int, CameraPose] = {}
        self._rng = rng
        self.calls = 0

    def register(self, image: Image, pose: CameraPose) -> None:
        self._poses[id(image)] = pose

    def visible(self, pose: CameraPose) -> np.ndarray:
        cam = self.points @ pose.R.T + pose.t
        in_front = cam[:, 2] > 1e-6
        uv = project(pose.projection_matrix(self.K), self.points)
        inside = (uv[:, 0] >= 0) & (uv[:, 0] < WIDTH) & (uv[:, 1] >= 0) & (uv[:, 1] < HEIGHT)
        return np.flatnonzero(in_front & inside)

    def extract(self, image: Image) -> FeatureSet:
        self.calls += 1
        if image.width < 16 or image.height < 16:
            raise ExtractionError(f"Image of {image.width}x{image.height} is too small")
        pose = self._poses[id(image)]
        ids = self._rng.permutation(self.visible(pose))
        if len(ids) == 0:
            return FeatureSet.empty()
        uv = project(pose.projection_matrix(self.K), self.points[ids])
        keypoints = [Keypoint(x=float(u), y=float(v), scale=1.6, orientation=0.0) for u, v in uv]
        return FeatureSet(
            keypoints=keypoints,
            descriptors=self.descriptors[ids],
            colors=self.colors[ids],
        )


def make_views(
    extractor: SyntheticExtractor,
    poses: List[CameraPose],
    known: Optional[List[bool]] = None,
) -> List[View]:
    views = []
    for k, pose in enumerate(poses):
        image = Image(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8))
        extractor.register(image, pose)
        is_known = True if known is None else known[k]
        views.append(View(index=k, image=image, K=extractor.K, pose=pose if is_known else None))
    return views


def random_scene(n: int = 60, seed: int = 1) -> np.ndarray:
    """Points in a box in front of a camera at the origin looking down +z."""
    rng = np.random.default_rng(seed)
    return np.column_stack(
        [rng.uniform(-1.0, 1.0, n), rng.uniform(-1.0, 1.0, n), rng.uniform(4.0, 6.0, n)]
    )


def rotation_y(deg: float) -> np.ndarray:
    a = np.radians(deg)
    return np.array([[np.cos(a), 0, np.sin(a)], [0, 1, 0], [-np.sin(a), 0, np.cos(a)]])


@pytest.fixture
def K() -> np.ndarray:
    return make_K()


@pytest.fixture
def stereo_scene(K):
    """Two views of a random point cloud with exact pixel observations."""
    points = random_scene()
    pose1 = CameraPose.identity()
    pose2 = CameraPose(R=rotation_y(-8.0), t=np.array([-1.0, 0.1, 0.2]))
    pts1 = project(pose1.projection_matrix(K), points)
    pts2 = project(pose2.projection_matrix(K), points)
    return {
        "points": points,
        "pose1": pose1,
        "pose2": pose2,
        "pts1": pts1,
        "pts2": pts2,
    }


def blob_image(size: int = 128, n_blobs: int = 30, seed: int = 3) -> np.ndarray:
    """Uint8 greyscale image of Gaussian blobs of varying size and polarity."""
    rng = np.random.default_rng(seed)
    rows, cols = np.mgrid[0:size, 0:size].astype(np.float64)
    img = np.full((size, size), 0.5)
    for _ in range(n_blobs):
        cy, cx = rng.uniform(12, size - 12, 2)
        sigma = rng.uniform(1.5, 4.0)
        amp = rng.choice([-0.4, 0.4])
        img += amp * np.exp(-((rows - cy) ** 2 + (cols - cx) ** 2) / (2 * sigma ** 2))
    return (np.clip(img, 0.0, 1.0) * 255).astype(np.uint8)
