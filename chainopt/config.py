# chainopt/config.py
"""
Optimizer configuration.

Defaults live on the dataclass; overrides come from a mapping or a
YAML file:

    max_concurrent_steps: 8
    cache_max_entries: 500
    history_limit: 100
"""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


@dataclass
class OptimizerConfig:
    """
    Tunables shared by the planner, engine, cache and tracker.

    Durations are milliseconds unless the name says otherwise.
    """
    max_concurrent_steps: int = 5
    cache_enabled: bool = True
    learning_enabled: bool = True

    # Adaptive retry
    reliability_threshold: float = 0.9
    enhanced_max_retries: int = 3
    backoff_ms: float = 1000
    retry_on: Tuple[str, ...] = ("timeout", "network_error", "unavailable")

    # Cache
    cache_max_entries: int = 1000
    cache_ttl_seconds: Optional[float] = 3600
    cache_hit_duration_ms: float = 50

    # History and timeouts
    history_limit: int = 100
    timeout_floor_ms: float = 60000
    timeout_multiplier: float = 1.5
    target_duration_ms: float = 30000

    # Recommendation thresholds
    cost_threshold: float = 1.0
    expensive_step_factor: float = 2.0
    retry_rate_threshold: float = 0.2

    cascade_on_failure: bool = True
    strict_registration: bool = False

    def __post_init__(self):
        self.retry_on = tuple(self.retry_on)
        if self.max_concurrent_steps < 1:
            raise ValueError("max_concurrent_steps must be >= 1")
        if not 0.0 <= self.reliability_threshold <= 1.0:
            raise ValueError("reliability_threshold must be within [0, 1]")
        if self.enhanced_max_retries < 0:
            raise ValueError("enhanced_max_retries must be >= 0")
        if self.backoff_ms < 0:
            raise ValueError("backoff_ms must be >= 0")
        if self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be >= 1")
        if self.cache_ttl_seconds is not None and self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0 or None")
        if self.history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        if self.timeout_multiplier <= 0:
            raise ValueError("timeout_multiplier must be > 0")

    @property
    def parallelism_enabled(self) -> bool:
        return self.max_concurrent_steps > 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["retry_on"] = list(self.retry_on)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OptimizerConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "OptimizerConfig":
        data = yaml.safe_load(yaml_content) or {}
        if not isinstance(data, dict):
            raise ValueError("Config YAML must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Path | str) -> "OptimizerConfig":
        """Load config from a YAML file."""
        with open(path, "r") as f:
            return cls.from_yaml(f.read())
