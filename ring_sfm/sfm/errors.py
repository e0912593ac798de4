"""
Error taxonomy for the reconstruction core.

Per-pair errors are caught and recorded by the pipeline; only
`PipelineFailure` describes the outcome of a whole run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Tuple

if TYPE_CHECKING:
    from ring_sfm.sfm.data_structures import ReconstructionResult


class SfmError(Exception):
    """Base class for all reconstruction errors."""


class ExtractionError(SfmError):
    """Raised when an image cannot be processed by the feature extractor."""


class InsufficientCorrespondencesError(SfmError):
    """Raised when too few correspondences survive for two-view geometry."""

    def __init__(self, found: int, required: int, stage: str = "") -> None:
        self.found = found
        self.required = required
        self.stage = stage
        where = f" after {stage}" if stage else ""
        super().__init__(
            f"Need at least {required} correspondences{where}, got {found}"
        )


class DegenerateGeometryError(SfmError):
    """Raised when correspondences do not constrain the epipolar geometry."""


class DegenerateTriangulationError(SfmError):
    """Raised when a triangulation system is too poorly conditioned to trust."""


class EstimationTimeoutError(SfmError):
    """Raised when RANSAC exhausts its time budget before finding any model."""


class PipelineFailure(SfmError):
    """
    Aggregate failure of a reconstruction run.

    Attributes:
        failed_pairs: List of ((i, j), reason) for every view pair that failed.
        result: Partial ReconstructionResult aggregated before the failure.
    """

    def __init__(
        self,
        message: str,
        failed_pairs: List[Tuple[Tuple[int, int], str]],
        result: Optional["ReconstructionResult"] = None,
    ) -> None:
        super().__init__(message)
        self.failed_pairs = list(failed_pairs)
        self.result = result


__all__ = [
    "SfmError",
    "ExtractionError",
    "InsufficientCorrespondencesError",
    "DegenerateGeometryError",
    "DegenerateTriangulationError",
    "EstimationTimeoutError",
    "PipelineFailure",
]
