import threading

import numpy as np
import pytest

from ring_sfm.sfm.aggregation import PointCloud
from ring_sfm.sfm.data_structures import Point3D


def _candidate(xyz, provenance, color=None, low_confidence=False):
    return Point3D(
        id=-1,
        xyz=np.asarray(xyz, dtype=np.float64),
        color=None if color is None else np.asarray(color, dtype=np.float64),
        provenance=frozenset(provenance),
        low_confidence=low_confidence,
    )


def _ring_candidates(seed=0):
    """Each of five world points seen by four overlapping view pairs, with small noise."""
    rng = np.random.default_rng(seed)
    world = rng.uniform(-1, 1, size=(5, 3))
    candidates = []
    for k, X in enumerate(world):
        for view in range(4):
            nxt = (view + 1) % 4
            xyz = X + rng.normal(scale=1e-5, size=3)
            candidates.append(_candidate(xyz, {(view, 10 + k), (nxt, 10 + k)}, color=rng.uniform(size=3)))
    return world, candidates


def _finalize(candidates, eps=1e-3):
    cloud = PointCloud(eps)
    cloud.add(candidates)
    return cloud.finalize()


def test_overlapping_observations_merge():
    world, candidates = _ring_candidates()
    merged = _finalize(candidates)

    assert len(merged) == len(world)
    for pt in merged:
        assert len(pt.provenance) == 4
        assert np.min(np.linalg.norm(world - pt.xyz, axis=1)) < 1e-4
    assert [pt.id for pt in merged] == list(range(len(merged)))


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_finalize_is_order_independent(seed):
    _, candidates = _ring_candidates()
    reference = _finalize(candidates)

    order = np.random.default_rng(seed).permutation(len(candidates))
    shuffled = _finalize([candidates[i] for i in order])

    assert len(shuffled) == len(reference)
    for a, b in zip(reference, shuffled):
        assert a.id == b.id
        assert a.provenance == b.provenance
        np.testing.assert_allclose(a.xyz, b.xyz, rtol=0, atol=1e-12)
        np.testing.assert_allclose(a.color, b.color, rtol=0, atol=1e-12)


def test_close_points_without_shared_observation_stay_separate():
    merged = _finalize(
        [
            _candidate([0.0, 0.0, 0.0], {(0, 1), (1, 1)}),
            _candidate([0.0, 0.0, 1e-5], {(2, 7), (3, 7)}),
        ]
    )
    assert len(merged) == 2


def test_shared_observation_but_far_apart_stays_separate():
    merged = _finalize(
        [
            _candidate([0.0, 0.0, 0.0], {(0, 1), (1, 1)}),
            _candidate([0.0, 0.0, 0.5], {(1, 1), (2, 4)}),
        ]
    )
    assert len(merged) == 2


def test_merging_is_transitive_through_shared_observations():
    merged = _finalize(
        [
            _candidate([0.0, 0.0, 0.0], {(0, 1), (1, 2)}),
            _candidate([0.0, 0.0, 8e-4], {(1, 2), (2, 3)}),
            _candidate([0.0, 0.0, 1.6e-3], {(2, 3), (3, 4)}),
        ]
    )
    assert len(merged) == 1
    assert merged[0].provenance == {(0, 1), (1, 2), (2, 3), (3, 4)}
    np.testing.assert_allclose(merged[0].xyz, [0.0, 0.0, 8e-4])


def test_merged_attributes():
    merged = _finalize(
        [
            _candidate([0.0, 0.0, 0.0], {(0, 1), (1, 2)}, color=[1.0, 0.0, 0.0], low_confidence=True),
            _candidate([0.0, 0.0, 2e-4], {(1, 2), (2, 3)}, color=[0.0, 0.0, 1.0], low_confidence=False),
        ]
    )
    assert len(merged) == 1
    np.testing.assert_allclose(merged[0].color, [0.5, 0.0, 0.5])
    np.testing.assert_allclose(merged[0].xyz, [0.0, 0.0, 1e-4])
    assert not merged[0].low_confidence


def test_all_low_confidence_members_stay_low_confidence():
    merged = _finalize(
        [
            _candidate([1.0, 1.0, 1.0], {(0, 5), (1, 5)}, low_confidence=True),
            _candidate([1.0, 1.0, 1.0], {(1, 5), (2, 5)}, low_confidence=True),
        ]
    )
    assert len(merged) == 1
    assert merged[0].low_confidence


def test_concurrent_adds_keep_every_candidate():
    _, candidates = _ring_candidates()
    cloud = PointCloud()
    chunks = [candidates[i::4] for i in range(4)]
    ids = []
    lock = threading.Lock()

    def worker(chunk):
        assigned = cloud.add(chunk)
        with lock:
            ids.extend(assigned)

    threads = [threading.Thread(target=worker, args=(chunk,)) for chunk in chunks]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cloud) == len(candidates)
    assert sorted(ids) == list(range(len(candidates)))
    assert len(cloud.finalize()) == 5


def test_empty_cloud():
    assert PointCloud().finalize() == []
