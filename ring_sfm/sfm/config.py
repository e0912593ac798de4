"""
Configuration for the reconstruction pipeline.

Each stage has its own dataclass; `ReconstructionConfig` groups them and
can be built from a plain dict or a JSON file, e.g.

    {
        "matcher": {"ratio_threshold": 0.7, "max_matches": 100},
        "geometry": {"ransac_threshold": 1.0, "max_iterations": 2000},
        "pipeline": {"min_success_ratio": 0.5, "dedup_epsilon": 1e-3}
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union


@dataclass
class ExtractorConfig:
    # Minimum |DoG| response, same convention as SIFT (divided by scales per octave).
    contrast_threshold: float = 0.04
    # Max ratio of principal curvatures; larger keeps more edge-like points.
    edge_threshold: float = 10.0
    num_octaves: int = 4
    scales_per_octave: int = 3
    sigma: float = 1.6
    # Soft cap on detections; None keeps everything.
    max_keypoints: Optional[int] = 2000
    min_image_size: int = 16

    def __post_init__(self) -> None:
        if self.contrast_threshold < 0:
            raise ValueError("contrast_threshold must be non-negative")
        if self.edge_threshold <= 1.0:
            raise ValueError("edge_threshold must be greater than 1")
        if self.num_octaves < 1 or self.scales_per_octave < 1:
            raise ValueError("num_octaves and scales_per_octave must be >= 1")
        if self.max_keypoints is not None and self.max_keypoints < 0:
            raise ValueError("max_keypoints must be non-negative or None")


@dataclass
class MatcherConfig:
    ratio_threshold: float = 0.75
    cross_check: bool = False
    # Keep only the k best-distance matches (None = keep all).
    max_matches: Optional[int] = None
    # Use a k-d tree once the train set has at least this many descriptors.
    index_min_size: int = 256
    # Approximation factor for the k-d tree search (0 = exact).
    index_eps: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 < self.ratio_threshold <= 1.0:
            raise ValueError("ratio_threshold must be in (0, 1]")
        if self.max_matches is not None and self.max_matches < 0:
            raise ValueError("max_matches must be non-negative or None")


@dataclass
class GeometryConfig:
    # Sampson distance (pixels) below which a correspondence is an inlier.
    ransac_threshold: float = 1.0
    confidence: float = 0.999
    max_iterations: int = 2000
    # Wall-clock budget in seconds for one RANSAC run (None = unbounded).
    time_budget: Optional[float] = None
    min_correspondences: int = 8
    seed: int = 0
    refine: bool = False
    # When both poses are known, also estimate the pose to report rotation error.
    cross_validate: bool = False

    def __post_init__(self) -> None:
        if self.ransac_threshold <= 0:
            raise ValueError("ransac_threshold must be positive")
        if not 0.0 < self.confidence < 1.0:
            raise ValueError("confidence must be in (0, 1)")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.min_correspondences < 8:
            raise ValueError("min_correspondences must be at least 8")


@dataclass
class TriangulationConfig:
    reprojection_threshold: float = 2.0
    # Second-smallest / largest singular value of the DLT system.
    min_singular_ratio: float = 1e-6

    def __post_init__(self) -> None:
        if self.reprojection_threshold <= 0:
            raise ValueError("reprojection_threshold must be positive")
        if self.min_singular_ratio < 0:
            raise ValueError("min_singular_ratio must be non-negative")


@dataclass
class PipelineConfig:
    min_success_ratio: float = 0.5
    max_consecutive_failures: Optional[int] = None
    dedup_epsilon: float = 1e-3
    close_ring: bool = True
    # Extra pairs (i, i + stride) beyond consecutive neighbours; None disables.
    pair_stride: Optional[int] = None
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_success_ratio <= 1.0:
            raise ValueError("min_success_ratio must be in [0, 1]")
        if self.dedup_epsilon < 0:
            raise ValueError("dedup_epsilon must be non-negative")
        if self.pair_stride is not None and self.pair_stride < 2:
            raise ValueError("pair_stride must be >= 2")


@dataclass
class ReconstructionConfig:
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    triangulation: TriangulationConfig = field(default_factory=TriangulationConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconstructionConfig":
        """Build a config from nested dicts; unknown sections or keys raise ValueError."""
        sections = {f.name: f.default_factory for f in fields(cls)}
        kwargs = {}
        for name, values in data.items():
            if name not in sections:
                raise ValueError(f"Unknown config section: {name}")
            section_cls = sections[name]
            known = {f.name for f in fields(section_cls)}
            unknown = set(values) - known
            if unknown:
                raise ValueError(f"Unknown keys in [{name}]: {sorted(unknown)}")
            kwargs[name] = section_cls(**values)
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "ReconstructionConfig":
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "ExtractorConfig",
    "MatcherConfig",
    "GeometryConfig",
    "TriangulationConfig",
    "PipelineConfig",
    "ReconstructionConfig",
]
