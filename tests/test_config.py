import pytest
from pydantic import ValidationError

from incremental.config import IncrementalWorkflowConfig, SamplingStrategy


def test_defaults():
    config = IncrementalWorkflowConfig()
    assert config.stage_ratios == [0.001, 0.005, 0.015, 0.025]
    assert config.min_sample_size == 100
    assert config.min_confidence_threshold == 0.98
    assert config.random_seed == 42
    assert config.sampling.strategy == SamplingStrategy.AUTO
    assert config.analysis.max_workers == 1


def test_stage_ratio_lookup():
    config = IncrementalWorkflowConfig()
    assert config.stage_ratio(1) == 0.001
    assert config.stage_ratio(4) == 0.025
    assert config.stage_ratio(5) == 1.0
    with pytest.raises(ValueError):
        config.stage_ratio(0)


@pytest.mark.parametrize("overrides", [
    {"stage1_ratio": 0},
    {"stage2_ratio": 1.5},
    {"stage1_ratio": 0.5, "stage2_ratio": 0.1},
    {"min_confidence_threshold": 1.2},
    {"max_error_rate": -0.1},
])
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        IncrementalWorkflowConfig(**overrides)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("INCREMENTAL_SKIP_HITL", "true")
    monkeypatch.setenv("INCREMENTAL_MIN_SAMPLE_SIZE", "25")
    monkeypatch.setenv("INCREMENTAL_SAMPLING__STRATEGY", "random")
    config = IncrementalWorkflowConfig()
    assert config.skip_hitl
    assert config.min_sample_size == 25
    assert config.sampling.strategy == SamplingStrategy.RANDOM
