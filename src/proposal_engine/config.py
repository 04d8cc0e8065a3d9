"""Engine configuration.

All policy constants live on ``EngineConfig``. Values can be overridden from
the ``[engine]`` table of ``config.toml`` in the data directory.
"""

from __future__ import annotations

import dataclasses
import math
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from proposal_engine.errors import ConfigurationError

HOME_ENV_VAR = "PROPOSAL_ENGINE_HOME"


def default_data_dir() -> Path:
    """Data directory, overridable with ``PROPOSAL_ENGINE_HOME``."""
    override = os.environ.get(HOME_ENV_VAR)
    return Path(override) if override else Path.home() / ".proposal-engine"


@dataclass(frozen=True)
class EngineConfig:
    """Tunable policy for consensus, allocation and performance tracking."""

    # Consensus
    acceptance_threshold: float = 7.0
    min_evaluations: int = 1
    score_min: float = 0.0
    score_max: float = 10.0
    specialty_match_weight: float = 1.0
    specialty_mismatch_weight: float = 0.5
    high_confidence_max_variance: float = 1.0
    high_confidence_min_samples: int = 3
    medium_confidence_max_variance: float = 2.0
    medium_confidence_min_samples: int = 2
    variance_low_max: float = 1.0
    variance_medium_max: float = 2.0
    decide_max_attempts: int = 3

    # Allocation (weights must sum to 1.0)
    capability_weight: float = 0.4
    workload_weight: float = 0.35
    performance_weight: float = 0.25
    workload_cap: int = 5
    neutral_performance: float = 0.5

    # Performance
    default_reputation: float = 0.5
    reputation_smoothing: float = 0.3
    metrics_interval_seconds: float = 3600.0
    metrics_window_seconds: float = 30 * 86400.0
    utilization_low_max: float = 1.0
    utilization_medium_max: float = 2.0

    # External calls
    call_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.score_min >= self.score_max:
            raise ValueError(
                f"score_min must be below score_max, got [{self.score_min}, {self.score_max}]"
            )
        if not self.score_min <= self.acceptance_threshold <= self.score_max:
            raise ValueError(
                f"acceptance_threshold must be within the score range, got {self.acceptance_threshold}"
            )
        for name in [
            "specialty_match_weight",
            "specialty_mismatch_weight",
            "capability_weight",
            "workload_weight",
            "performance_weight",
            "neutral_performance",
            "default_reputation",
            "reputation_smoothing",
        ]:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0.0, 1.0], got {value}")

        total = self.capability_weight + self.workload_weight + self.performance_weight
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"allocation weights must sum to 1.0, got {total}")

        for low, medium in [
            ("variance_low_max", "variance_medium_max"),
            ("utilization_low_max", "utilization_medium_max"),
        ]:
            if not 0 < getattr(self, low) <= getattr(self, medium):
                raise ValueError(f"{low} must be > 0 and <= {medium}")

        if self.min_evaluations < 1:
            raise ValueError(f"min_evaluations must be >= 1, got {self.min_evaluations}")
        if self.decide_max_attempts < 1:
            raise ValueError(
                f"decide_max_attempts must be >= 1, got {self.decide_max_attempts}"
            )
        if self.workload_cap < 1:
            raise ValueError(f"workload_cap must be >= 1, got {self.workload_cap}")
        for name in [
            "call_timeout_seconds",
            "metrics_interval_seconds",
            "metrics_window_seconds",
        ]:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")


def load_config(path: Path | None = None) -> EngineConfig:
    """Load ``EngineConfig`` from a TOML file.

    A missing file yields the defaults. Unknown keys and invalid values raise
    ``ConfigurationError``.
    """
    config_path = path or default_data_dir() / "config.toml"
    if not config_path.exists():
        return EngineConfig()

    try:
        with config_path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {exc}") from exc

    section: dict[str, Any] = data.get("engine", {})
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys in {config_path}: {', '.join(unknown)}")

    try:
        return EngineConfig(**section)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid config in {config_path}: {exc}") from exc
