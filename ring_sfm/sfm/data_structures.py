"""
Shared core data structures for the reconstruction pipeline.

These dataclasses are intentionally simple containers used across:
- feature extraction and matching
- two-view geometry and triangulation
- aggregation and result export

Provenance is stored as plain (image index, keypoint index) pairs rather
than references between objects.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from ring_sfm.sfm.errors import PipelineFailure

Provenance = FrozenSet[Tuple[int, int]]
ViewPair = Tuple[int, int]


class Image:
    """
    An immutable decoded image.

    The pixel array is copied and flagged read-only. Accepts (H, W) greyscale
    or (H, W, 3) RGB arrays.
    """

    def __init__(self, pixels: np.ndarray) -> None:
        pixels = np.array(pixels, copy=True)
        if pixels.ndim == 2:
            self.pixel_format = "gray"
        elif pixels.ndim == 3 and pixels.shape[2] == 3:
            self.pixel_format = "rgb"
        else:
            raise ValueError(
                f"Expected (H, W) or (H, W, 3) pixel array, got shape {pixels.shape}"
            )
        pixels.setflags(write=False)
        self._pixels = pixels

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    def __repr__(self) -> str:
        return f"Image({self.width}x{self.height}, {self.pixel_format})"


@dataclass(frozen=True)
class Keypoint:
    """A detected feature location in original image pixel coordinates."""

    x: float
    y: float
    # Gaussian sigma of the detection, in original image pixels.
    scale: float
    # Dominant gradient orientation, radians in [0, 2*pi).
    orientation: float
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass
class FeatureSet:
    """
    Keypoints and descriptors of a single view.

    `descriptors` is (N, D) and aligned with `keypoints` by row index.
    `colors` is (N, 3) RGB in [0, 1], sampled at each keypoint so the image
    itself can be released after extraction.
    """

    keypoints: List[Keypoint]
    descriptors: np.ndarray
    colors: np.ndarray

    def __len__(self) -> int:
        return len(self.keypoints)

    def points(self) -> np.ndarray:
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([kp.pt for kp in self.keypoints], dtype=np.float64)

    @classmethod
    def empty(cls, descriptor_size: int = 128, dtype=np.float32) -> "FeatureSet":
        return cls(
            keypoints=[],
            descriptors=np.zeros((0, descriptor_size), dtype=dtype),
            colors=np.zeros((0, 3), dtype=np.float64),
        )


@dataclass(frozen=True)
class Correspondence:
    """A putative match between keypoint `query_idx` in A and `train_idx` in B."""

    query_idx: int
    train_idx: int
    distance: float
    # 1 - best / second-best distance; higher is more distinctive.
    score: float = 0.0


def orthonormalize(R: np.ndarray) -> np.ndarray:
    """Project a 3x3 matrix onto the closest rotation (Frobenius norm)."""
    U, _, Vt = np.linalg.svd(np.asarray(R, dtype=np.float64))
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] *= -1
        R_ortho = U @ Vt
    return R_ortho


@dataclass
class CameraPose:
    """Rotation (3x3) and translation (3,) from world to camera coordinates."""

    R: np.ndarray
    t: np.ndarray

    def __post_init__(self) -> None:
        self.R = orthonormalize(self.R)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "CameraPose":
        return cls(R=np.eye(3), t=np.zeros(3))

    @property
    def center(self) -> np.ndarray:
        # C = -R^T @ t
        return -self.R.T @ self.t

    def projection_matrix(self, K: np.ndarray) -> np.ndarray:
        """P = K [R | t] (3x4)."""
        return np.asarray(K, dtype=np.float64) @ np.hstack([self.R, self.t.reshape(3, 1)])

    def relative_to(self, other: "CameraPose") -> "CameraPose":
        """Pose of this camera expressed in the frame of `other`."""
        R_rel = self.R @ other.R.T
        t_rel = self.t - R_rel @ other.t
        return CameraPose(R=R_rel, t=t_rel)

    def compose(self, relative: "CameraPose") -> "CameraPose":
        """Apply a relative motion (this frame -> next frame) to this pose."""
        return CameraPose(R=relative.R @ self.R, t=relative.R @ self.t + relative.t)

    def orthonormalized(self) -> "CameraPose":
        return CameraPose(R=self.R, t=self.t)


@dataclass
class View:
    """One image of the ring, with its intrinsics and optional known pose."""

    index: int
    image: Optional[Image]
    K: np.ndarray
    pose: Optional[CameraPose] = None
    name: str = ""


@dataclass
class Point3D:
    """A single reconstructed point in world coordinates."""

    id: int
    xyz: np.ndarray
    # RGB color (3,) in [0, 1], or None when no color was sampled.
    color: Optional[np.ndarray] = None
    provenance: Provenance = field(default_factory=frozenset)
    low_confidence: bool = False
    # Largest per-view reprojection error, in pixels.
    reprojection_error: float = 0.0


@dataclass
class PairDiagnostics:
    """Per-pair record for observability outside the core."""

    pair: ViewPair
    num_matches: int = 0
    num_inliers: int = 0
    num_triangulated: int = 0
    num_low_confidence: int = 0
    num_degenerate: int = 0
    reprojection_mean: float = float("nan")
    reprojection_median: float = float("nan")
    reprojection_max: float = float("nan")
    pose_source: str = ""
    rotation_error_deg: Optional[float] = None
    elapsed: float = 0.0
    failure_reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.failure_reason is not None


class PipelineState(enum.Enum):
    IDLE = "Idle"
    EXTRACTING_FEATURES = "ExtractingFeatures"
    MATCHING_PAIRS = "MatchingPairs"
    ESTIMATING_GEOMETRY = "EstimatingGeometry"
    TRIANGULATING = "Triangulating"
    AGGREGATING = "Aggregating"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class ReconstructionResult:
    """Read-only snapshot of a reconstruction, ready to hand to a renderer."""

    points: Tuple[Point3D, ...]
    diagnostics: Tuple[PairDiagnostics, ...] = ()
    poses: Tuple[Optional[CameraPose], ...] = ()
    state: PipelineState = PipelineState.DONE
    failure: Optional[PipelineFailure] = None
    cancelled: bool = False
    # View.index of each ring position; `poses` is in the same order.
    view_indices: Tuple[int, ...] = ()

    @property
    def failed(self) -> bool:
        return self.state is PipelineState.FAILED

    @property
    def failed_pairs(self) -> List[Tuple[ViewPair, str]]:
        return [(d.pair, d.failure_reason) for d in self.diagnostics if d.failed]

    def positions(self) -> np.ndarray:
        if not self.points:
            return np.zeros((0, 3), dtype=np.float64)
        return np.array([pt.xyz for pt in self.points], dtype=np.float64)

    def colors(self, default: Sequence[float] = (0.5, 0.5, 0.5)) -> np.ndarray:
        if not self.points:
            return np.zeros((0, 3), dtype=np.float64)
        return np.array(
            [pt.color if pt.color is not None else default for pt in self.points],
            dtype=np.float64,
        )

    def confidence_mask(self) -> np.ndarray:
        return np.array([not pt.low_confidence for pt in self.points], dtype=bool)

    def confident(self) -> Tuple[Point3D, ...]:
        return tuple(pt for pt in self.points if not pt.low_confidence)

    def __len__(self) -> int:
        return len(self.points)


__all__ = [
    "Image",
    "Keypoint",
    "FeatureSet",
    "Correspondence",
    "CameraPose",
    "View",
    "Point3D",
    "PairDiagnostics",
    "PipelineState",
    "ReconstructionResult",
    "orthonormalize",
]
