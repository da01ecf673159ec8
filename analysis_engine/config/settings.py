"""Centralized configuration for the analysis engine.

Every tunable of the job engine, rate limiter and circuit breaker lives
here with a documented default. Configuration can be loaded from YAML files
and is validated at startup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from analysis_engine.utils.result import ConfigError, Err, Ok, Result


@dataclass
class BatchConfig:
    """Per-invocation budgets and liveness settings."""

    max_items: int = 5
    time_budget_seconds: float = 25.0
    follow_up_delay_seconds: float = 1.0
    stale_threshold_seconds: float = 120.0
    liveness_interval_seconds: float = 60.0
    error_sample_size: int = 5


@dataclass
class EntityClassConfig:
    """How many entities of one class a job may enqueue."""

    include: bool = True
    limit: int = 50
    max_limit: int = 500


@dataclass
class AnalysisConfig:
    """Entity classes in processing order."""

    entities: dict[str, EntityClassConfig] = field(
        default_factory=lambda: {
            "products": EntityClassConfig(limit=50, max_limit=500),
            "customers": EntityClassConfig(limit=100, max_limit=1000),
        }
    )

    def for_class(self, entity_class: str) -> EntityClassConfig:
        return self.entities.get(entity_class, EntityClassConfig())


@dataclass
class RateLimitConfig:
    """Admin caps on external calls; 0 disables a window."""

    per_hour: int = 100
    per_day: int = 1000
    reschedule_buffer_seconds: float = 5.0


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds."""

    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 3
    state_ttl: float = 3600.0
    fallback_cache_ttl: float = 3600.0


@dataclass
class ActionsConfig:
    """Derived-action handling."""

    # None enables every suggested type
    enabled_types: Optional[list[str]] = None
    auto_execute: bool = False
    max_per_run: int = 10
    priority_threshold: int = 70


@dataclass
class FeaturesConfig:
    """Feature gate used when the host does not supply its own."""

    module_enabled: bool = True
    disabled: list[str] = field(default_factory=list)
    # 0 means unlimited
    analyses_per_day: int = 0


@dataclass
class StorageConfig:
    """Where engine records are persisted."""

    backend: str = "file"
    state_dir: Optional[Path] = None


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"


@dataclass
class EngineConfig:
    """
    Complete engine configuration.

    This is the single source of truth for all configuration values.
    """

    batch: BatchConfig = field(default_factory=BatchConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    actions: ActionsConfig = field(default_factory=ActionsConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Entity class -> "module:factory" import path, used by the CLI
    analyzers: dict[str, str] = field(default_factory=dict)

    # Error code -> {"message": ..., "details": ...} overrides
    messages: dict[str, dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> Result["EngineConfig", ConfigError]:
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Result with loaded config or error
        """
        path = Path(path)

        if not path.exists():
            return Err(ConfigError(
                field="path",
                message=f"Configuration file not found: {path}",
            ))

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            return Err(ConfigError(
                field="yaml",
                message=f"Failed to parse YAML: {e}",
            ))
        except OSError as e:
            return Err(ConfigError(
                field="file",
                message=f"Failed to read config file: {e}",
            ))

        if not isinstance(data, dict):
            return Err(ConfigError(
                field="yaml",
                message="Top-level configuration must be a mapping",
            ))

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result["EngineConfig", ConfigError]:
        """
        Create configuration from a dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Result with loaded config or error
        """
        try:
            batch_data = data.get("batch", {})
            batch = BatchConfig(
                max_items=int(batch_data.get("max_items", 5)),
                time_budget_seconds=float(batch_data.get("time_budget_seconds", 25.0)),
                follow_up_delay_seconds=float(batch_data.get("follow_up_delay_seconds", 1.0)),
                stale_threshold_seconds=float(batch_data.get("stale_threshold_seconds", 120.0)),
                liveness_interval_seconds=float(batch_data.get("liveness_interval_seconds", 60.0)),
                error_sample_size=int(batch_data.get("error_sample_size", 5)),
            )

            analysis = AnalysisConfig()
            for entity_class, entity_data in (data.get("analysis") or {}).items():
                defaults = analysis.for_class(entity_class)
                entity_data = entity_data or {}
                analysis.entities[entity_class] = EntityClassConfig(
                    include=bool(entity_data.get("include", defaults.include)),
                    limit=int(entity_data.get("limit", defaults.limit)),
                    max_limit=int(entity_data.get("max_limit", defaults.max_limit)),
                )

            rate_data = data.get("rate_limit", {})
            rate_limit = RateLimitConfig(
                per_hour=int(rate_data.get("per_hour", 100)),
                per_day=int(rate_data.get("per_day", 1000)),
                reschedule_buffer_seconds=float(rate_data.get("reschedule_buffer_seconds", 5.0)),
            )

            circuit_data = data.get("circuit_breaker", {})
            circuit_breaker = CircuitBreakerConfig(
                enabled=bool(circuit_data.get("enabled", True)),
                failure_threshold=int(circuit_data.get("failure_threshold", 5)),
                recovery_timeout=float(circuit_data.get("recovery_timeout", 60.0)),
                half_open_max_calls=int(circuit_data.get("half_open_max_calls", 3)),
                state_ttl=float(circuit_data.get("state_ttl", 3600.0)),
                fallback_cache_ttl=float(circuit_data.get("fallback_cache_ttl", 3600.0)),
            )

            actions_data = data.get("actions", {})
            enabled_types = actions_data.get("enabled_types")
            actions = ActionsConfig(
                enabled_types=list(enabled_types) if enabled_types is not None else None,
                auto_execute=bool(actions_data.get("auto_execute", False)),
                max_per_run=int(actions_data.get("max_per_run", 10)),
                priority_threshold=int(actions_data.get("priority_threshold", 70)),
            )

            features_data = data.get("features", {})
            features = FeaturesConfig(
                module_enabled=bool(features_data.get("module_enabled", True)),
                disabled=list(features_data.get("disabled", [])),
                analyses_per_day=int(features_data.get("analyses_per_day", 0)),
            )

            storage_data = data.get("storage", {})
            state_dir = storage_data.get("state_dir")
            storage = StorageConfig(
                backend=storage_data.get("backend", "file"),
                state_dir=Path(state_dir) if state_dir else None,
            )

            logging_data = data.get("logging", {})
            logging_config = LoggingConfig(
                level=logging_data.get("level", "info"),
                format=logging_data.get("format", "json"),
            )

            config = cls(
                batch=batch,
                analysis=analysis,
                rate_limit=rate_limit,
                circuit_breaker=circuit_breaker,
                actions=actions,
                features=features,
                storage=storage,
                logging=logging_config,
                analyzers=dict(data.get("analyzers") or {}),
                messages=dict(data.get("messages") or {}),
            )

            return Ok(config)

        except (TypeError, ValueError, AttributeError) as e:
            return Err(ConfigError(
                field="unknown",
                message=f"Failed to parse configuration: {e}",
            ))

    def validate(self) -> Result[None, ConfigError]:
        """
        Validate configuration values.

        Returns:
            Result indicating success or validation error
        """
        if self.batch.max_items < 1:
            return Err(ConfigError(
                field="batch.max_items",
                message=f"Must be at least 1, got {self.batch.max_items}",
            ))

        for name, value in [
            ("time_budget_seconds", self.batch.time_budget_seconds),
            ("stale_threshold_seconds", self.batch.stale_threshold_seconds),
            ("liveness_interval_seconds", self.batch.liveness_interval_seconds),
        ]:
            if value <= 0:
                return Err(ConfigError(
                    field=f"batch.{name}",
                    message=f"Must be positive, got {value}",
                ))

        if self.batch.follow_up_delay_seconds < 0:
            return Err(ConfigError(
                field="batch.follow_up_delay_seconds",
                message=f"Must not be negative, got {self.batch.follow_up_delay_seconds}",
            ))

        # A stale threshold below the time budget would flag healthy batches
        if self.batch.stale_threshold_seconds <= self.batch.time_budget_seconds:
            return Err(ConfigError(
                field="batch.stale_threshold_seconds",
                message="Must be greater than batch.time_budget_seconds",
            ))

        if self.batch.error_sample_size < 1:
            return Err(ConfigError(
                field="batch.error_sample_size",
                message=f"Must be at least 1, got {self.batch.error_sample_size}",
            ))

        for entity_class, entity in self.analysis.entities.items():
            if entity.limit < 0 or entity.max_limit < 0:
                return Err(ConfigError(
                    field=f"analysis.{entity_class}",
                    message="Limits must not be negative",
                ))

        if self.rate_limit.per_hour < 0 or self.rate_limit.per_day < 0:
            return Err(ConfigError(
                field="rate_limit",
                message="Limits must not be negative",
            ))

        if self.circuit_breaker.failure_threshold < 1:
            return Err(ConfigError(
                field="circuit_breaker.failure_threshold",
                message=f"Must be at least 1, got {self.circuit_breaker.failure_threshold}",
            ))
        if self.circuit_breaker.recovery_timeout < 1:
            return Err(ConfigError(
                field="circuit_breaker.recovery_timeout",
                message=f"Must be at least 1, got {self.circuit_breaker.recovery_timeout}",
            ))
        if self.circuit_breaker.half_open_max_calls < 1:
            return Err(ConfigError(
                field="circuit_breaker.half_open_max_calls",
                message=f"Must be at least 1, got {self.circuit_breaker.half_open_max_calls}",
            ))

        if not 0 <= self.actions.priority_threshold <= 100:
            return Err(ConfigError(
                field="actions.priority_threshold",
                message=f"Must be between 0 and 100, got {self.actions.priority_threshold}",
            ))

        if self.storage.backend not in ("memory", "file"):
            return Err(ConfigError(
                field="storage.backend",
                message=f"Must be 'memory' or 'file', got {self.storage.backend!r}",
            ))

        return Ok(None)

    def with_state_dir(self, state_dir: Optional[Path]) -> "EngineConfig":
        """Return a copy of this config persisting under state_dir."""
        if state_dir is None:
            return self
        return EngineConfig(
            batch=self.batch,
            analysis=self.analysis,
            rate_limit=self.rate_limit,
            circuit_breaker=self.circuit_breaker,
            actions=self.actions,
            features=self.features,
            storage=StorageConfig(backend=self.storage.backend, state_dir=Path(state_dir)),
            logging=self.logging,
            analyzers=self.analyzers,
            messages=self.messages,
        )


def load_config(config_dir: Path = None) -> Result[EngineConfig, ConfigError]:
    """
    Load configuration from the standard location.

    Loads config/defaults.yaml, then overlays config/local.yaml if present.

    Args:
        config_dir: Configuration directory (defaults to ./config)

    Returns:
        Result with loaded config or error
    """
    if config_dir is None:
        config_dir = Path("./config")

    config_dir = Path(config_dir)

    data: dict[str, Any] = {}
    for name in ("defaults.yaml", "local.yaml"):
        path = config_dir / name
        if not path.exists():
            continue
        try:
            with open(path) as f:
                layer = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            return Err(ConfigError(
                field=name,
                message=f"Failed to load configuration layer: {e}",
            ))
        data = _merge(data, layer)

    result = EngineConfig.from_dict(data)
    if result.is_err():
        return result
    config = result.unwrap()

    validation_result = config.validate()
    if validation_result.is_err():
        return Err(validation_result.unwrap_err())

    return Ok(config)


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged
