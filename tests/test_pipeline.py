from dataclasses import replace

import numpy as np
import pytest

from conftest import (
    SyntheticExtractor,
    cube_corners,
    look_at,
    make_K,
    make_views,
    random_scene,
    ring_poses,
    rotation_y,
)
from ring_sfm.features.matching import DescriptorMatcher
from ring_sfm.sfm.config import PipelineConfig, ReconstructionConfig
from ring_sfm.sfm.data_structures import CameraPose, Image, PipelineState, View
from ring_sfm.sfm.errors import PipelineFailure
from ring_sfm.sfm.pipeline import ReconstructionPipeline


def _config(**pipeline):
    return ReconstructionConfig(pipeline=PipelineConfig(**pipeline))


def _pipeline(extractor, config=None):
    return ReconstructionPipeline(config or ReconstructionConfig(), extractor=extractor)


def _nearest_distances(points, targets):
    return np.array([np.min(np.linalg.norm(targets - p, axis=1)) for p in points])


@pytest.fixture
def cube_ring():
    K = make_K()
    extractor = SyntheticExtractor(cube_corners(), K)
    views = make_views(extractor, ring_poses(4))
    return extractor, views


def test_cube_ring_recovers_corners(cube_ring):
    extractor, views = cube_ring
    pipeline = _pipeline(extractor)

    result = pipeline.run(views)

    assert result.state is PipelineState.DONE
    assert not result.failed
    assert result.failed_pairs == []
    assert len(result) == 8
    assert np.all(_nearest_distances(result.positions(), cube_corners()) < 1e-6)
    assert np.all(result.confidence_mask())
    # Every corner is seen by all four views.
    assert all(len(pt.provenance) == 4 for pt in result.points)
    assert [d.pair for d in result.diagnostics] == [(0, 1), (1, 2), (2, 3), (3, 0)]
    assert all(d.pose_source == "known" for d in result.diagnostics)
    assert all(d.num_inliers == 8 and d.num_triangulated == 8 for d in result.diagnostics)


def test_state_history(cube_ring):
    extractor, views = cube_ring
    pipeline = _pipeline(extractor)
    assert pipeline.state is PipelineState.IDLE

    pipeline.run(views)

    assert pipeline.history == [
        PipelineState.IDLE,
        PipelineState.EXTRACTING_FEATURES,
        PipelineState.MATCHING_PAIRS,
        PipelineState.ESTIMATING_GEOMETRY,
        PipelineState.TRIANGULATING,
        PipelineState.AGGREGATING,
        PipelineState.DONE,
    ]
    assert len(pipeline.aggregated_points()) == 8


def test_pipeline_runs_only_once(cube_ring):
    extractor, views = cube_ring
    pipeline = _pipeline(extractor)
    pipeline.run(views)

    with pytest.raises(RuntimeError):
        pipeline.run(views)


def test_duplicate_view_indices_rejected(cube_ring):
    extractor, views = cube_ring
    views[1].index = 0

    with pytest.raises(ValueError):
        _pipeline(extractor).run(views)


def test_zero_overlap_pair_is_reported_not_raised():
    K = make_K()
    extractor = SyntheticExtractor(cube_corners(), K)
    facing = look_at((5.0, 1.0, 0.0))
    away = look_at((5.0, 1.0, 5.0), target=(10.0, 1.0, 10.0))
    views = make_views(extractor, [facing, away])

    features = [extractor.extract(v.image) for v in views]
    assert len(features[1]) == 0
    assert DescriptorMatcher().match(features[0].descriptors, features[1].descriptors) == []

    extractor = SyntheticExtractor(cube_corners(), K)
    views = make_views(extractor, [facing, away])
    result = _pipeline(extractor).run(views)

    assert result.failed
    assert result.state is PipelineState.FAILED
    assert len(result) == 0
    (pair, reason), = result.failed_pairs
    assert pair == (0, 1)
    assert "InsufficientCorrespondencesError" in reason
    assert isinstance(result.failure, PipelineFailure)
    assert result.failure.result is result


def test_raise_on_failure():
    K = make_K()
    extractor = SyntheticExtractor(cube_corners(), K)
    views = make_views(
        extractor, [look_at((5.0, 1.0, 0.0)), look_at((5.0, 1.0, 5.0), target=(10.0, 1.0, 10.0))]
    )
    pipeline = _pipeline(extractor)

    with pytest.raises(PipelineFailure) as info:
        pipeline.run(views, raise_on_failure=True)

    assert info.value.failed_pairs[0][0] == (0, 1)
    assert info.value.result.state is PipelineState.FAILED
    assert pipeline.state is PipelineState.FAILED


def _ring_with_bad_view(extractor):
    views = make_views(extractor, ring_poses(4))
    small = Image(np.zeros((8, 8), dtype=np.uint8))
    views[2] = View(index=2, image=small, K=views[2].K, pose=views[2].pose)
    return views


def test_failed_extraction_only_fails_its_pairs():
    extractor = SyntheticExtractor(cube_corners(), make_K())
    result = _pipeline(extractor).run(_ring_with_bad_view(extractor))

    assert result.state is PipelineState.DONE
    assert [pair for pair, _ in result.failed_pairs] == [(1, 2), (2, 3)]
    assert all("ExtractionError" in reason for _, reason in result.failed_pairs)
    assert len(result) == 8
    assert np.all(_nearest_distances(result.positions(), cube_corners()) < 1e-6)


def test_consecutive_failure_limit():
    extractor = SyntheticExtractor(cube_corners(), make_K())
    result = _pipeline(extractor, _config(max_consecutive_failures=1)).run(_ring_with_bad_view(extractor))

    assert result.failed
    assert "consecutive" in str(result.failure)
    # Points from the surviving pairs are still available.
    assert len(result) == 8


def test_success_ratio_threshold():
    extractor = SyntheticExtractor(cube_corners(), make_K())
    result = _pipeline(extractor, _config(min_success_ratio=0.75)).run(_ring_with_bad_view(extractor))

    assert result.failed
    assert len(result.failure.failed_pairs) == 2


class _CancellingExtractor(SyntheticExtractor):
    pipeline = None

    def extract(self, image):
        features = super().extract(image)
        self.pipeline.cancel()
        return features


def test_cancellation_stops_remaining_work():
    K = make_K()
    extractor = _CancellingExtractor(cube_corners(), K)
    views = make_views(extractor, ring_poses(4))
    pipeline = _pipeline(extractor, _config(max_workers=1))
    extractor.pipeline = pipeline

    result = pipeline.run(views)

    assert result.cancelled
    assert not result.failed
    assert result.state is PipelineState.DONE
    assert extractor.calls == 1
    assert len(result) == 0
    assert all(reason == "cancelled" for _, reason in result.failed_pairs)


def test_missing_poses_are_estimated():
    K = make_K()
    points = random_scene()
    pose1 = CameraPose.identity()
    pose2 = CameraPose(R=rotation_y(-8.0), t=np.array([-1.0, 0.1, 0.2]))
    extractor = SyntheticExtractor(points, K)
    views = make_views(extractor, [pose1, pose2], known=[True, False])
    both = np.intersect1d(extractor.visible(pose1), extractor.visible(pose2))

    result = _pipeline(extractor).run(views)

    assert result.state is PipelineState.DONE
    assert result.diagnostics[0].pose_source == "estimated"
    assert len(result) == len(both)
    assert np.all(result.confidence_mask())
    # Two-view reconstruction is only defined up to scale; the baseline is unit length.
    scale = 1.0 / np.linalg.norm(pose2.t)
    assert np.all(_nearest_distances(result.positions(), points[both] * scale) < 1e-6)
    np.testing.assert_allclose(result.poses[1].R, pose2.R, atol=1e-6)


def test_cross_validation_records_rotation_error():
    K = make_K()
    points = random_scene()
    poses = [CameraPose.identity(), CameraPose(R=rotation_y(-8.0), t=np.array([-1.0, 0.1, 0.2]))]
    extractor = SyntheticExtractor(points, K)
    views = make_views(extractor, poses)
    config = ReconstructionConfig()
    config.geometry.cross_validate = True

    result = _pipeline(extractor, config).run(views)

    diag = result.diagnostics[0]
    assert diag.pose_source == "known"
    assert diag.rotation_error_deg is not None
    assert diag.rotation_error_deg < 0.1


def test_view_pairs():
    pipeline = ReconstructionPipeline()
    assert pipeline.view_pairs(2) == [(0, 1)]
    assert pipeline.view_pairs(4) == [(0, 1), (1, 2), (2, 3), (3, 0)]

    open_ring = ReconstructionPipeline(_config(close_ring=False))
    assert open_ring.view_pairs(4) == [(0, 1), (1, 2), (2, 3)]

    strided = ReconstructionPipeline(_config(pair_stride=2))
    assert strided.view_pairs(4) == [(0, 1), (1, 2), (2, 3), (3, 0), (0, 2), (1, 3)]


def test_exhausted_time_budget_fails_the_pair_without_raising():
    K = make_K()
    pose2 = CameraPose(R=rotation_y(-8.0), t=np.array([-1.0, 0.1, 0.2]))
    extractor = SyntheticExtractor(random_scene(), K)
    views = make_views(extractor, [CameraPose.identity(), pose2], known=[True, False])
    config = ReconstructionConfig()
    config.geometry.time_budget = 0.0

    result = _pipeline(extractor, config).run(views)

    assert result.state is PipelineState.FAILED
    assert len(result) == 0
    (pair, reason), = result.failed_pairs
    assert pair == (0, 1)
    assert "EstimationTimeoutError" in reason


def _ring_at(angles_deg, radius=5.0, height=1.0):
    return [
        look_at((radius * np.cos(a), height, radius * np.sin(a))) for a in np.radians(angles_deg)
    ]


def test_irregular_ring_with_unknown_poses_shares_one_scale():
    K = make_K()
    points = np.random.default_rng(7).uniform(-0.5, 0.5, size=(80, 3))
    poses = _ring_at([0.0, 50.0, 110.0, 200.0, 290.0])
    extractor = SyntheticExtractor(points, K)
    views = make_views(extractor, poses, known=[True, False, False, False, False])
    assert all(len(extractor.visible(pose)) == 80 for pose in poses)

    result = _pipeline(extractor).run(views)

    assert result.state is PipelineState.DONE
    assert result.failed_pairs == []
    assert len(result) == 80
    assert np.all(result.confidence_mask())
    # Tracks from every pair merge, so each point carries all five views.
    assert all(len(pt.provenance) == 5 for pt in result.points)

    closing = result.diagnostics[-1]
    assert closing.pair == (4, 0)
    assert closing.num_triangulated == 80
    assert closing.num_low_confidence == 0
    assert closing.reprojection_max < 1e-3

    # The first estimated pair fixes a unit baseline around view 0.
    R0, t0 = poses[0].R, poses[0].t
    scale = 1.0 / np.linalg.norm(poses[1].center - poses[0].center)
    expected = (scale * (points @ R0.T + t0) - t0) @ R0
    assert np.all(_nearest_distances(result.positions(), expected) < 1e-4)
    for estimated, true in zip(result.poses[1:], poses[1:]):
        np.testing.assert_allclose(estimated.R, true.R, atol=1e-6)


def test_pair_with_only_low_confidence_points_fails():
    K = make_K()
    pose2 = CameraPose(R=rotation_y(-8.0), t=np.array([-1.0, 0.1, 0.2]))
    extractor = SyntheticExtractor(random_scene(), K)
    views = make_views(extractor, [CameraPose.identity(), pose2])
    # Tilt the second camera about its center: still within the epipolar
    # threshold, but no pair of rays meets exactly.
    a = np.radians(0.02)
    tilt = np.array([[1.0, 0.0, 0.0], [0.0, np.cos(a), -np.sin(a)], [0.0, np.sin(a), np.cos(a)]])
    views[1] = replace(views[1], pose=CameraPose(R=tilt @ pose2.R, t=tilt @ pose2.t))
    config = ReconstructionConfig()
    config.triangulation.reprojection_threshold = 1e-3

    result = _pipeline(extractor, config).run(views)

    assert result.failed
    assert len(result) == 0
    (pair, reason), = result.failed_pairs
    assert pair == (0, 1)
    assert "low-confidence" in reason
    diag = result.diagnostics[0]
    assert diag.num_triangulated > 0
    assert diag.num_low_confidence == diag.num_triangulated


class _RecordingPipeline(ReconstructionPipeline):
    images_seen = None

    def _resolve_poses(self, views, works, features):
        self.images_seen = [view.image for view in views]
        return super()._resolve_poses(views, works, features)


def test_images_are_released_after_extraction(cube_ring):
    extractor, views = cube_ring
    pipeline = _RecordingPipeline(extractor=extractor)

    result = pipeline.run(views)

    assert result.state is PipelineState.DONE
    assert pipeline.images_seen == [None] * 4
    # The caller's views are left untouched.
    assert all(view.image is not None for view in views)
