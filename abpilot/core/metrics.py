"""Prometheus metrics for abpilot.

Counters, histograms and gauges for the decision pipeline:
- evaluations by outcome and their duration
- winners selected and alerts raised
- rollouts in flight and rollbacks by reason

Example usage:
    from abpilot.core.metrics import configure_metrics, get_metrics

    configure_metrics(enabled=True)

    metrics = get_metrics()
    if metrics:
        metrics.record_evaluation("winner", duration_seconds=0.02)
"""

import logging
from functools import lru_cache
from threading import Lock

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_init_lock = Lock()

_metrics_configured = False


class MetricsSettings(BaseSettings):
    """Metrics configuration settings.

    Overridable via environment variables with the ABPILOT_METRICS_ prefix.
    """

    enabled: bool = Field(
        default=True,
        description="Enable or disable metrics collection",
    )
    prefix: str = Field(
        default="abpilot",
        description="Prefix for all metric names",
    )
    default_buckets: list[float] = Field(
        default=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
        description="Histogram buckets for evaluation duration (seconds)",
    )

    model_config = {
        "env_prefix": "ABPILOT_METRICS_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_metrics_settings() -> MetricsSettings:
    """Get cached metrics settings."""
    return MetricsSettings()


class ABPilotMetrics:
    """Container for all abpilot Prometheus metrics."""

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        settings: MetricsSettings | None = None,
    ) -> None:
        """Initialize metrics.

        Args:
            registry: Optional custom registry. Uses default if not provided.
            settings: Optional settings. Uses defaults if not provided.
        """
        self.registry = registry or REGISTRY
        self.settings = settings or get_metrics_settings()
        prefix = self.settings.prefix
        buckets = tuple(self.settings.default_buckets)

        # ===== Counters =====

        self.evaluations_total = Counter(
            f"{prefix}_evaluations_total",
            "Test evaluations by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.winners_total = Counter(
            f"{prefix}_winners_total",
            "Winners selected by implementation strategy",
            ["strategy"],
            registry=self.registry,
        )
        self.alerts_total = Counter(
            f"{prefix}_alerts_total",
            "Alerts published by type and severity",
            ["type", "severity"],
            registry=self.registry,
        )
        self.rollbacks_total = Counter(
            f"{prefix}_rollbacks_total",
            "Rollouts reverted to control",
            ["trigger"],
            registry=self.registry,
        )
        self.tick_failures_total = Counter(
            f"{prefix}_tick_failures_total",
            "Scheduler ticks that failed to enumerate tests",
            registry=self.registry,
        )

        # ===== Histograms =====

        self.evaluation_duration_seconds = Histogram(
            f"{prefix}_evaluation_duration_seconds",
            "Single test evaluation duration in seconds",
            buckets=buckets,
            registry=self.registry,
        )

        # ===== Gauges =====

        self.evaluations_in_flight = Gauge(
            f"{prefix}_evaluations_in_flight",
            "Evaluations currently holding a worker slot",
            registry=self.registry,
        )
        self.active_rollouts = Gauge(
            f"{prefix}_active_rollouts",
            "Implementation controllers in a non-terminal state",
            registry=self.registry,
        )

    def record_evaluation(self, outcome: str, duration_seconds: float) -> None:
        """Record a finished evaluation.

        Args:
            outcome: One of winner, no_winner, skipped, failed, timeout.
            duration_seconds: Wall-clock evaluation time.
        """
        self.evaluations_total.labels(outcome=outcome).inc()
        self.evaluation_duration_seconds.observe(duration_seconds)

    def record_winner(self, strategy: str) -> None:
        """Record a selected winner."""
        self.winners_total.labels(strategy=strategy).inc()

    def record_alert(self, alert_type: str, severity: str) -> None:
        """Record a published alert."""
        self.alerts_total.labels(type=alert_type, severity=severity).inc()

    def record_rollback(self, trigger: str) -> None:
        """Record a rollback by the trigger metric that caused it, or ``manual``."""
        self.rollbacks_total.labels(trigger=trigger).inc()

    def collectors(self) -> list[Counter | Gauge | Histogram]:
        """All collectors owned by this instance."""
        return [
            self.evaluations_total,
            self.winners_total,
            self.alerts_total,
            self.rollbacks_total,
            self.tick_failures_total,
            self.evaluation_duration_seconds,
            self.evaluations_in_flight,
            self.active_rollouts,
        ]


_metrics: ABPilotMetrics | None = None
_registry: CollectorRegistry | None = None


def configure_metrics(
    enabled: bool | None = None,
    settings: MetricsSettings | None = None,
    registry: CollectorRegistry | None = None,
) -> ABPilotMetrics | None:
    """Configure Prometheus metrics.

    Call once during startup; later calls return the existing instance.

    Args:
        enabled: Override enabled setting. If None, uses settings value.
        settings: Complete settings override.
        registry: Custom registry for metrics. Useful for testing.

    Returns:
        Configured metrics instance, or None if disabled.
    """
    global _metrics_configured, _metrics, _registry

    with _init_lock:
        if _metrics_configured:
            return _metrics

        if settings is None:
            settings = get_metrics_settings()

        is_enabled = enabled if enabled is not None else settings.enabled
        if not is_enabled:
            logger.info("Metrics collection is disabled")
            _metrics_configured = True
            return None

        _metrics = ABPilotMetrics(registry=registry, settings=settings)
        _registry = registry
        _metrics_configured = True
        logger.info("Prometheus metrics configured with prefix '%s'", settings.prefix)
        return _metrics


def reset_metrics() -> None:
    """Reset metrics configuration state (for tests).

    Unregisters collectors from the registry they were created in.
    """
    global _metrics_configured, _metrics, _registry

    with _init_lock:
        if _metrics is not None:
            for collector in _metrics.collectors():
                try:
                    _metrics.registry.unregister(collector)
                except KeyError:
                    pass

        _metrics_configured = False
        _metrics = None
        _registry = None
        get_metrics_settings.cache_clear()


def get_metrics() -> ABPilotMetrics | None:
    """Get the global metrics instance, configuring it on first use."""
    if not _metrics_configured:
        configure_metrics()
    return _metrics


def get_registry() -> CollectorRegistry:
    """Get the registry the metrics are registered in."""
    if _registry is not None:
        return _registry
    return REGISTRY


def generate_metrics() -> bytes:
    """Generate metrics output in Prometheus text format."""
    return generate_latest(get_registry())
