"""Configuration management for SIKG."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from sikg.exceptions import ConfigError

SIKG_DIR = ".sikg"
CONFIG_FILE = "config.json"
GRAPH_FILE = "graph.json"
RL_STATE_FILE = "rl_state.json"
SESSION_FILE = "session.json"


class GraphConfig(BaseModel):
    """Edge weight bounds and node bookkeeping."""

    min_weight: float = 0.1
    max_weight: float = 2.0
    default_edge_weight: float = 1.0
    history_size: int = 20  # execution-history ring per test node
    history_enhancement: bool = True


class PropagationConfig(BaseModel):
    """Impact marking and scoring limits."""

    max_bfs_depth: int = 3
    max_path_length: int = 3
    max_paths_per_test: int = 200
    aggregation: Literal["max", "sum"] = "max"
    high_impact_threshold: float = 0.7
    low_impact_threshold: float = 0.3


class WeightUpdateConfig(BaseModel):
    """Edge weight learning from prediction errors."""

    learning_rate: float = 0.01
    significance_threshold: float = 0.2
    decay_factor: float = 0.99
    max_path_length: int = 3
    max_candidate_paths: int = 50
    max_applied_paths: int = 20
    regularization_min_std: float = 0.5


class FeedbackConfig(BaseModel):
    """Session bookkeeping and learning-signal generation."""

    min_confidence_threshold: float = 0.6
    max_learning_signals: int = 10
    session_timeout_s: float = 30 * 60
    max_completed_sessions: int = 100


class PolicyConfig(BaseModel):
    """Safeguards applied before a learning signal may touch the policy."""

    signal_min_confidence: float = 0.6
    instability_floor: float = 0.3
    strong_signal: float = 0.5
    rate_limit_window_s: float = 10 * 60
    rate_limit_max: int = 5
    history_retention_s: float = 24 * 60 * 60
    time_pressure_ms: float = 600_000


class RLConfig(BaseModel):
    """System-level hyperparameters held by the coordinator."""

    enabled: bool = True
    learning_rate: float = 0.01
    exploration_rate: float = 0.1
    performance_threshold: float = 0.6
    adaptation_interval_s: float = 5 * 60
    max_history_size: int = 1000
    target_execution_time_ms: float = 300_000


class ProjectConfig(BaseModel):
    """Full project configuration."""

    name: str = ""
    root_path: str = "."
    graph: GraphConfig = Field(default_factory=GraphConfig)
    propagation: PropagationConfig = Field(default_factory=PropagationConfig)
    weights: WeightUpdateConfig = Field(default_factory=WeightUpdateConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    rl: RLConfig = Field(default_factory=RLConfig)


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from `start` looking for a .sikg directory."""
    current = (start or Path.cwd()).resolve()
    while current != current.parent:
        if (current / SIKG_DIR).is_dir():
            return current
        current = current.parent
    if (current / SIKG_DIR).is_dir():
        return current
    return None


def get_sikg_dir(root: Path) -> Path:
    """Get the .sikg directory for a project root."""
    return root / SIKG_DIR


def load_config(root: Path) -> ProjectConfig:
    """Load configuration from .sikg/config.json."""
    config_path = get_sikg_dir(root) / CONFIG_FILE
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
            return ProjectConfig(**data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
    return ProjectConfig(name=root.name, root_path=str(root))


def save_config(root: Path, config: ProjectConfig) -> None:
    """Save configuration to .sikg/config.json."""
    sikg_dir = get_sikg_dir(root)
    sikg_dir.mkdir(parents=True, exist_ok=True)
    config_path = sikg_dir / CONFIG_FILE
    config_path.write_text(json.dumps(config.model_dump(), indent=2))


def set_config_value(config: ProjectConfig, key: str, value: Any) -> ProjectConfig:
    """Set a nested config value using dot notation (e.g., 'rl.learning_rate')."""
    parts = key.split(".")
    data = config.model_dump()
    target = data
    for part in parts[:-1]:
        if part not in target or not isinstance(target[part], dict):
            raise KeyError(f"Invalid config key: {key}")
        target = target[part]
    if parts[-1] not in target:
        raise KeyError(f"Invalid config key: {key}")
    target[parts[-1]] = value
    try:
        return ProjectConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
