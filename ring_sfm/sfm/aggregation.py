"""
Single-writer point cloud aggregation with order-independent deduplication.

Candidate points from every view pair are appended to an arena under a
lock. `finalize()` merges candidates that are both close in space and share
at least one (image, keypoint) observation. Candidates are sorted into a
canonical order before merging, so the output does not depend on the order
in which pair results arrived.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Tuple

import numpy as np
from scipy.spatial import cKDTree

from ring_sfm.sfm.data_structures import Point3D

logger = logging.getLogger(__name__)


class _UnionFind:
    def __init__(self, n: int) -> None:
        self.parent = list(range(n))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, i: int, j: int) -> None:
        root_i, root_j = self.find(i), self.find(j)
        if root_i != root_j:
            # Lower index leads so group membership is deterministic.
            self.parent[max(root_i, root_j)] = min(root_i, root_j)


def _canonical_key(pt: Point3D) -> Tuple:
    return (tuple(sorted(pt.provenance)), tuple(float(c) for c in pt.xyz))


class PointCloud:
    """
    Arena of candidate Point3D with stable indices.

    `add()` may be called from several threads; it is the only mutation
    and is serialized by a lock.
    """

    def __init__(self, dedup_epsilon: float = 1e-3) -> None:
        self.dedup_epsilon = dedup_epsilon
        self._candidates: List[Point3D] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._candidates)

    def add(self, points: Iterable[Point3D]) -> List[int]:
        """
        Append candidate points, assigning arena ids.

        Returns:
            The ids assigned to the new candidates.
        """
        points = list(points)
        with self._lock:
            start = len(self._candidates)
            for offset, pt in enumerate(points):
                pt.id = start + offset
                self._candidates.append(pt)
            return list(range(start, start + len(points)))

    def snapshot(self) -> List[Point3D]:
        with self._lock:
            return list(self._candidates)

    def finalize(self) -> List[Point3D]:
        """
        Merge duplicate candidates and return the deduplicated cloud.

        Two candidates are merged when they are within `dedup_epsilon` of each
        other and their provenance overlaps; merging is transitive. Merged
        position and color are means over the group, provenance is the union,
        and the merged point is low-confidence only if every member was.

        Returns:
            Points with ids 0..n-1 in canonical order.
        """
        candidates = sorted(self.snapshot(), key=_canonical_key)
        n = len(candidates)
        if n == 0:
            return []

        uf = _UnionFind(n)
        positions = np.array([pt.xyz for pt in candidates], dtype=np.float64)
        finite = np.all(np.isfinite(positions), axis=1)
        finite_idx = np.flatnonzero(finite)
        if len(finite_idx) > 1:
            tree = cKDTree(positions[finite_idx])
            for a, b in sorted(tree.query_pairs(r=self.dedup_epsilon)):
                i, j = int(finite_idx[a]), int(finite_idx[b])
                if candidates[i].provenance & candidates[j].provenance:
                    uf.union(i, j)

        groups: Dict[int, List[int]] = {}
        for i in range(n):
            groups.setdefault(uf.find(i), []).append(i)

        merged: List[Point3D] = []
        for root in sorted(groups):
            members = [candidates[i] for i in groups[root]]
            merged.append(_merge_group(members))

        merged.sort(key=_canonical_key)
        for new_id, pt in enumerate(merged):
            pt.id = new_id

        logger.info(
            "Aggregated %d candidate points into %d (%d merged)",
            n,
            len(merged),
            n - len(merged),
        )
        return merged


def _merge_group(members: List[Point3D]) -> Point3D:
    if len(members) == 1:
        pt = members[0]
        return Point3D(
            id=-1,
            xyz=np.array(pt.xyz, dtype=np.float64),
            color=None if pt.color is None else np.array(pt.color, dtype=np.float64),
            provenance=pt.provenance,
            low_confidence=pt.low_confidence,
            reprojection_error=pt.reprojection_error,
        )

    xyz = np.mean([m.xyz for m in members], axis=0)
    colors = [m.color for m in members if m.color is not None]
    color = np.mean(colors, axis=0) if colors else None
    provenance = frozenset().union(*(m.provenance for m in members))
    return Point3D(
        id=-1,
        xyz=xyz,
        color=color,
        provenance=provenance,
        low_confidence=all(m.low_confidence for m in members),
        reprojection_error=max(m.reprojection_error for m in members),
    )


__all__ = ["PointCloud"]
