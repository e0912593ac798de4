"""
Descriptor matching with a k-d tree or brute-force search and Lowe's ratio test.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from ring_sfm.sfm.config import MatcherConfig
from ring_sfm.sfm.data_structures import Correspondence

logger = logging.getLogger(__name__)


def _is_binary(descriptors: np.ndarray) -> bool:
    return descriptors.dtype == np.uint8


def _pairwise_distances(descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
    """Full (N1, N2) distance matrix: Hamming for uint8, Euclidean otherwise."""
    if _is_binary(descriptors1):
        bits1 = np.unpackbits(descriptors1, axis=1).astype(np.int32)
        bits2 = np.unpackbits(descriptors2, axis=1).astype(np.int32)
        # |a xor b| = |a| + |b| - 2 a.b for 0/1 vectors
        return (
            bits1.sum(axis=1)[:, None]
            + bits2.sum(axis=1)[None, :]
            - 2 * bits1 @ bits2.T
        ).astype(np.float64)

    d1 = descriptors1.astype(np.float64)
    d2 = descriptors2.astype(np.float64)
    sq = (
        np.sum(d1 * d1, axis=1)[:, None]
        + np.sum(d2 * d2, axis=1)[None, :]
        - 2.0 * d1 @ d2.T
    )
    return np.sqrt(np.maximum(sq, 0.0))


def knn_match(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    use_index: bool = True,
    index_eps: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Two nearest neighbours in `descriptors2` for every row of `descriptors1`.

    Args:
        descriptors1: Query descriptors (N1, D).
        descriptors2: Train descriptors (N2, D), N2 >= 2.
        use_index: Search a k-d tree instead of the full distance matrix.
            Ignored for binary descriptors.
        index_eps: Approximation factor for the k-d tree search.

    Returns:
        Tuple of (distances, indices), both (N1, 2), sorted by distance with
        ties broken by the lower train index.
    """
    if use_index and not _is_binary(descriptors1):
        tree = cKDTree(descriptors2.astype(np.float64))
        distances, indices = tree.query(descriptors1.astype(np.float64), k=2, eps=index_eps)
        # Equal distances: prefer the lower train index.
        swap = (distances[:, 0] == distances[:, 1]) & (indices[:, 1] < indices[:, 0])
        indices[swap] = indices[swap][:, ::-1]
        return distances, indices

    dist = _pairwise_distances(descriptors1, descriptors2)
    # Stable sort keeps the lower index first on ties.
    order = np.argsort(dist, axis=1, kind="stable")[:, :2]
    distances = np.take_along_axis(dist, order, axis=1)
    return distances, order


def filter_matches_ratio_test(
    distances: np.ndarray,
    indices: np.ndarray,
    ratio: float = 0.75,
) -> List[Correspondence]:
    """
    Filter k-NN candidates using Lowe's ratio test.

    Args:
        distances: (N, 2) best and second-best distances.
        indices: (N, 2) corresponding train indices.
        ratio: Accept when best < ratio * second-best.

    Returns:
        Correspondences ordered by query index.
    """
    good = []
    for query_idx in range(len(distances)):
        best, second = distances[query_idx]
        if best < ratio * second:
            score = 1.0 - best / second if second > 0 else 0.0
            good.append(
                Correspondence(
                    query_idx=query_idx,
                    train_idx=int(indices[query_idx, 0]),
                    distance=float(best),
                    score=float(score),
                )
            )
    return good


def _nearest_neighbours(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    use_index: bool,
    index_eps: float,
) -> np.ndarray:
    """Index of the single nearest neighbour in `descriptors2` for each row."""
    if use_index and not _is_binary(descriptors1):
        tree = cKDTree(descriptors2.astype(np.float64))
        _, indices = tree.query(descriptors1.astype(np.float64), k=1, eps=index_eps)
        return np.asarray(indices, dtype=int)
    dist = _pairwise_distances(descriptors1, descriptors2)
    return np.argmin(dist, axis=1)


class DescriptorMatcher:
    """
    Ratio-test matcher with optional cross-check.

    Float descriptors are compared with Euclidean distance, uint8 descriptors
    with Hamming distance.
    """

    def __init__(self, config: Optional[MatcherConfig] = None) -> None:
        self.config = config or MatcherConfig()

    def _use_index(self, train_size: int) -> bool:
        return train_size >= self.config.index_min_size

    def match(self, descriptors_a: np.ndarray, descriptors_b: np.ndarray) -> List[Correspondence]:
        """
        Match descriptor set A against descriptor set B.

        Returns:
            At most len(A) correspondences; empty when either side has fewer
            descriptors than the ratio test needs.
        """
        cfg = self.config
        if len(descriptors_a) == 0 or len(descriptors_b) < 2:
            return []
        if descriptors_a.shape[1] != descriptors_b.shape[1]:
            raise ValueError(
                f"Descriptor size mismatch: {descriptors_a.shape[1]} vs {descriptors_b.shape[1]}"
            )

        distances, indices = knn_match(
            descriptors_a,
            descriptors_b,
            use_index=self._use_index(len(descriptors_b)),
            index_eps=cfg.index_eps,
        )
        matches = filter_matches_ratio_test(distances, indices, ratio=cfg.ratio_threshold)
        n_ratio = len(matches)

        if cfg.cross_check and matches:
            reverse = _nearest_neighbours(
                descriptors_b,
                descriptors_a,
                use_index=self._use_index(len(descriptors_a)),
                index_eps=cfg.index_eps,
            )
            matches = [m for m in matches if reverse[m.train_idx] == m.query_idx]

        if cfg.max_matches is not None and len(matches) > cfg.max_matches:
            matches = sorted(matches, key=lambda m: (m.distance, m.query_idx))[: cfg.max_matches]
            matches.sort(key=lambda m: m.query_idx)

        logger.debug(
            "Matching %d vs %d descriptors: %d after ratio test, %d kept",
            len(descriptors_a),
            len(descriptors_b),
            n_ratio,
            len(matches),
        )
        return matches


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    ratio: float = 0.75,
    cross_check: bool = False,
) -> List[Correspondence]:
    """Convenience wrapper around DescriptorMatcher with default settings."""
    matcher = DescriptorMatcher(MatcherConfig(ratio_threshold=ratio, cross_check=cross_check))
    return matcher.match(descriptors1, descriptors2)


__all__ = [
    "DescriptorMatcher",
    "knn_match",
    "filter_matches_ratio_test",
    "match_keypoints",
]
