"""Tests for engine configuration loading and validation."""

from pathlib import Path

import pytest

from proposal_engine.config import EngineConfig, default_data_dir, load_config
from proposal_engine.errors import ConfigurationError


def test_defaults() -> None:
    config = EngineConfig()
    assert config.acceptance_threshold == 7.0
    assert (config.capability_weight, config.workload_weight, config.performance_weight) == (
        0.4,
        0.35,
        0.25,
    )
    assert config.workload_cap == 5
    assert config.neutral_performance == 0.5


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValueError, match="sum to 1.0"):
        EngineConfig(capability_weight=0.5)


def test_threshold_inside_score_range() -> None:
    with pytest.raises(ValueError, match="acceptance_threshold"):
        EngineConfig(acceptance_threshold=11.0)


def test_invalid_score_range() -> None:
    with pytest.raises(ValueError, match="score_min"):
        EngineConfig(score_min=10.0, score_max=0.0, acceptance_threshold=5.0)


def test_band_thresholds_ordered() -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        EngineConfig(variance_low_max=3.0, variance_medium_max=2.0)
    with pytest.raises(ValueError, match="must be > 0"):
        EngineConfig(utilization_low_max=0.0)


def test_min_evaluations_positive() -> None:
    with pytest.raises(ValueError, match="min_evaluations"):
        EngineConfig(min_evaluations=0)


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "missing.toml") == EngineConfig()


def test_load_overrides(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[engine]\nacceptance_threshold = 6.5\nworkload_cap = 10\n")
    config = load_config(path)
    assert config.acceptance_threshold == 6.5
    assert config.workload_cap == 10
    assert config.min_evaluations == 1


def test_unknown_key_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[engine]\nthreshold = 6.5\n")
    with pytest.raises(ConfigurationError, match="threshold"):
        load_config(path)


def test_invalid_value_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[engine]\nreputation_smoothing = 1.5\n")
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_bad_toml_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[engine\n")
    with pytest.raises(ConfigurationError, match="Invalid TOML"):
        load_config(path)


def test_home_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROPOSAL_ENGINE_HOME", str(tmp_path))
    assert default_data_dir() == tmp_path
