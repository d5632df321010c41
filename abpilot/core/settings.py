"""abpilot configuration management.

Configuration is loaded from multiple sources with the following
priority (highest to lowest):
1. Explicit overrides passed to ``get_settings``
2. Environment variables (with ABPILOT_ prefix, ``__`` for nesting)
3. Configuration file (abpilot.config.yaml / abpilot.config.yml)
4. Default values

Example usage:
    from abpilot.core.settings import get_settings

    settings = get_settings()
    print(settings.scheduler.check_interval)

Environment variable support:
    ABPILOT_LOG_LEVEL=DEBUG
    ABPILOT_SCHEDULER__MAX_CONCURRENT_EVALUATIONS=8
    ABPILOT_STATISTICS__CONFIDENCE_LEVEL=0.99
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = ["abpilot.config.yaml", "abpilot.config.yml"]

RiskToleranceName = Literal["conservative", "moderate", "aggressive"]

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _validate_log_level(v: str) -> str:
    upper_v = v.upper()
    if upper_v not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of {sorted(VALID_LOG_LEVELS)}"
        )
    return upper_v


def _find_config_file(start_dir: Path | None = None) -> Path | None:
    """Find configuration file by searching current directory and parents.

    Args:
        start_dir: Directory to start search from.
            Defaults to current working directory.

    Returns:
        Path to config file if found, None otherwise.
    """
    search_dir = start_dir or Path.cwd()

    for _ in range(10):
        for filename in CONFIG_FILE_NAMES:
            config_path = search_dir / filename
            if config_path.exists():
                return config_path

        parent = search_dir.parent
        if parent == search_dir:
            break
        search_dir = parent

    return None


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary of configuration values, empty on parse or read errors.
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
            return config if isinstance(config, dict) else {}
    except yaml.YAMLError as e:
        logger.warning("Failed to parse config file %s: %s", config_path, e)
        return {}
    except OSError as e:
        logger.warning("Failed to read config file %s: %s", config_path, e)
        return {}


class StatisticsSettings(BaseSettings):
    """Significance engine settings.

    All probabilities and effects are ratios (0-1).
    """

    confidence_level: float = Field(
        default=0.95,
        gt=0.5,
        lt=1.0,
        description="Confidence level for intervals and significance",
    )
    power: float = Field(
        default=0.8,
        gt=0.0,
        lt=1.0,
        description="Target statistical power",
    )
    minimum_detectable_effect: float = Field(
        default=0.10,
        gt=0.0,
        description="Relative improvement the test is sized to detect",
    )
    minimum_sample_size: int = Field(
        default=2500,
        ge=0,
        description="Combined control+variant visitors required for significance",
    )
    minimum_improvement: float = Field(
        default=0.05,
        ge=0.0,
        description="Relative improvement required to recommend stopping",
    )
    srm_p_value_threshold: float = Field(
        default=0.001,
        gt=0.0,
        lt=1.0,
        description="Chi-square p-value below which a sample ratio mismatch fails",
    )
    novelty_window_hours: float = Field(
        default=24.0,
        ge=0.0,
        description="Early period during which significant results are flagged",
    )
    flatline_min_impressions: int = Field(
        default=100,
        ge=1,
        description="Impressions after which a 0% or 100% rate is a failure",
    )
    trend_confidence: float = Field(
        default=0.80,
        gt=0.0,
        lt=1.0,
        description="Confidence above which an underpowered test is 'trending'",
    )
    traffic_tolerance: float = Field(
        default=0.5,
        ge=0.0,
        description="Allowed deviation of the traffic split sum from 100",
    )
    strategy: str = Field(
        default="z_test",
        description="Significance test strategy name",
    )


class MonitoringSettings(BaseSettings):
    """Performance monitor settings."""

    alert_cooldown_minutes: float = Field(
        default=30.0,
        ge=0.0,
        description="Window in which alerts of one type are deduplicated per test",
    )
    performance_drop_threshold: float = Field(
        default=0.10,
        gt=0.0,
        lt=1.0,
        description="Relative conversion-rate drop between snapshots that alerts",
    )
    max_alert_history: int = Field(
        default=1000,
        ge=1,
        description="Alerts kept in memory by the alert stream",
    )


class SchedulerSettings(BaseSettings):
    """Automatic winner scheduler settings.

    Units match the external configuration interface: minutes for the
    interval and percentages for the selection criteria.
    """

    enabled: bool = Field(default=True, description="Run scheduled ticks")
    check_interval: float = Field(
        default=30.0,
        gt=0.0,
        description="Minutes between scheduled ticks",
    )
    max_concurrent_evaluations: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Maximum test evaluations in flight at once",
    )
    minimum_confidence: float = Field(
        default=95.0,
        gt=0.0,
        le=100.0,
        description="Minimum winner confidence (%)",
    )
    minimum_improvement: float = Field(
        default=5.0,
        ge=0.0,
        description="Minimum winner improvement (%)",
    )
    risk_tolerance: RiskToleranceName = Field(
        default="moderate",
        description="Risk tolerance for implementation planning",
    )
    max_backoff_multiplier: float = Field(
        default=5.0,
        ge=1.0,
        description="Tick retry delay cap as a multiple of check_interval",
    )


class RolloutSettings(BaseSettings):
    """Implementation controller and rollout planning settings."""

    sample_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds between live metric samples",
    )
    seconds_per_hour: float = Field(
        default=3600.0,
        gt=0.0,
        description="Wall-clock seconds per plan hour (lower to accelerate)",
    )
    ramp_fraction: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Share of a phase spent ramping toward its target",
    )
    min_phase_hours: float = Field(default=1.0, gt=0.0)
    max_phase_hours: float = Field(default=72.0, gt=0.0)
    detection_latency_minutes: float = Field(
        default=5.0,
        ge=0.0,
        description="Time for automated monitoring to notice a breach",
    )
    error_rate_threshold: float = Field(
        default=0.05,
        gt=0.0,
        description="Error-rate increase (absolute) that forces rollback",
    )
    error_rate_timeframe_minutes: float = Field(default=10.0, gt=0.0)
    conversion_drop_threshold: float = Field(
        default=0.10,
        gt=0.0,
        lt=1.0,
        description="Relative conversion drop that pauses the rollout",
    )
    conversion_drop_timeframe_minutes: float = Field(default=30.0, gt=0.0)
    revenue_drop_threshold: float = Field(default=0.15, gt=0.0, lt=1.0)
    revenue_drop_timeframe_minutes: float = Field(default=60.0, gt=0.0)
    expected_daily_visitors: int = Field(
        default=10000,
        ge=1,
        description="Traffic assumption for sizing phase observation windows",
    )
    escalation_contacts: list[str] = Field(
        default_factory=lambda: ["experiment_owner", "team_lead", "on_call"],
        min_length=1,
        description="Escalation contacts; level N notifies the first N",
    )

    @model_validator(mode="after")
    def validate_phase_bounds(self) -> "RolloutSettings":
        """Ensure min phase hours does not exceed max phase hours."""
        if self.min_phase_hours > self.max_phase_hours:
            raise ValueError("min_phase_hours must not exceed max_phase_hours")
        return self


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_output: bool | None = Field(
        default=None,
        description="Output logs as JSON (None auto-detects from the TTY)",
    )
    file: str | None = Field(default=None, description="Log file path (optional)")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        return _validate_log_level(v)


_SECTIONS = ("statistics", "monitoring", "scheduler", "rollout", "logging")


class ABPilotSettings(BaseSettings):
    """Main abpilot configuration settings.

    Example:
        settings = ABPilotSettings()
        print(settings.statistics.confidence_level)

        settings = ABPilotSettings(scheduler={"check_interval": 5})
    """

    model_config = SettingsConfigDict(
        env_prefix="ABPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    log_level: str = Field(
        default="INFO",
        description="Shorthand for logging.level; wins when both are set",
    )

    statistics: StatisticsSettings = Field(default_factory=StatisticsSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    rollout: RolloutSettings = Field(default_factory=RolloutSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        return _validate_log_level(v)

    @model_validator(mode="before")
    @classmethod
    def load_from_config_file(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Merge values from the discovered YAML file under explicit data."""
        if data.get("_skip_file_loading"):
            data.pop("_skip_file_loading", None)
            return data

        config_path = _find_config_file()
        if not config_path:
            return data

        file_config = _load_yaml_config(config_path)
        if not file_config:
            return data

        logger.debug("Loaded configuration from %s", config_path)
        merged = {**file_config, **data}
        for section in _SECTIONS:
            file_section = file_config.get(section)
            if isinstance(file_section, dict):
                data_section = data.get(section)
                merged[section] = {
                    **file_section,
                    **(data_section if isinstance(data_section, dict) else {}),
                }
        return merged

    @model_validator(mode="after")
    def sync_log_level(self) -> "ABPilotSettings":
        """Keep ``log_level`` and ``logging.level`` pointing at one level."""
        if "log_level" in self.model_fields_set:
            self.logging.level = self.log_level
        else:
            self.log_level = self.logging.level
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a plain dictionary."""
        return json.loads(self.model_dump_json())


def get_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> ABPilotSettings:
    """Get abpilot settings instance.

    Args:
        config_file: Optional explicit path to configuration file.
        **overrides: Explicit configuration overrides.

    Returns:
        Configured ABPilotSettings instance.
    """
    if config_file and config_file.exists():
        file_config = _load_yaml_config(config_file)
        merged = {**file_config, **overrides, "_skip_file_loading": True}
        return ABPilotSettings(**merged)

    return ABPilotSettings(**overrides)


@lru_cache
def get_cached_settings() -> ABPilotSettings:
    """Get cached settings instance.

    The cache can be cleared with ``get_cached_settings.cache_clear()``.
    """
    return get_settings()
