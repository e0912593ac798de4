import json

import pytest

from ring_sfm.sfm.config import (
    ExtractorConfig,
    GeometryConfig,
    MatcherConfig,
    PipelineConfig,
    ReconstructionConfig,
    TriangulationConfig,
)


def test_defaults():
    config = ReconstructionConfig()

    assert config.matcher.ratio_threshold == 0.75
    assert config.geometry.min_correspondences == 8
    assert config.triangulation.reprojection_threshold == 2.0
    assert config.triangulation.min_singular_ratio == 1e-6
    assert config.pipeline.min_success_ratio == 0.5


def test_from_dict_overrides_sections():
    config = ReconstructionConfig.from_dict(
        {"matcher": {"cross_check": True}, "pipeline": {"max_workers": 2, "pair_stride": 3}}
    )

    assert config.matcher.cross_check
    assert config.matcher.ratio_threshold == 0.75
    assert config.pipeline.max_workers == 2
    assert config.pipeline.pair_stride == 3
    assert config.extractor == ExtractorConfig()


def test_from_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"geometry": {"seed": 7, "refine": True}}))

    config = ReconstructionConfig.from_json(path)

    assert config.geometry.seed == 7
    assert config.geometry.refine
    assert ReconstructionConfig.from_dict(config.to_dict()) == config


@pytest.mark.parametrize(
    "data",
    [
        {"renderer": {}},
        {"matcher": {"ratio": 0.8}},
    ],
)
def test_unknown_entries_rejected(data):
    with pytest.raises(ValueError):
        ReconstructionConfig.from_dict(data)


@pytest.mark.parametrize(
    "factory",
    [
        lambda: MatcherConfig(ratio_threshold=1.5),
        lambda: GeometryConfig(min_correspondences=5),
        lambda: GeometryConfig(confidence=1.0),
        lambda: TriangulationConfig(reprojection_threshold=0.0),
        lambda: PipelineConfig(min_success_ratio=1.2),
        lambda: PipelineConfig(pair_stride=1),
        lambda: ExtractorConfig(num_octaves=0),
    ],
)
def test_invalid_values_rejected(factory):
    with pytest.raises(ValueError):
        factory()
