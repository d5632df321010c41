"""Phased winner rollout with automatic rollback."""

from abpilot.rollout.controller import ImplementationController
from abpilot.rollout.models import (
    ImplementationStatus,
    LiveMetricsSample,
    RolloutState,
    TriggerBreach,
)
from abpilot.rollout.registry import ImplementationRegistry
from abpilot.rollout.traffic import (
    InMemoryLiveMetricsSource,
    InMemoryTrafficRouter,
    LiveMetricsSource,
    TrafficRouter,
)

__all__ = [
    "ImplementationController",
    "ImplementationRegistry",
    "ImplementationStatus",
    "InMemoryLiveMetricsSource",
    "InMemoryTrafficRouter",
    "LiveMetricsSample",
    "LiveMetricsSource",
    "RolloutState",
    "TrafficRouter",
    "TriggerBreach",
]
