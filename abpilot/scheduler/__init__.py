"""Automatic winner selection on a timer."""

from abpilot.scheduler.locks import KeyedLock
from abpilot.scheduler.models import (
    ActiveTest,
    DefaultCriteria,
    EvaluationOutcome,
    EvaluationRecord,
    ExperimentStatus,
    ManualEvaluationRequest,
    SchedulerConfig,
    SchedulerMetrics,
    TickResult,
)
from abpilot.scheduler.scheduler import AutomaticWinnerScheduler
from abpilot.scheduler.sources import InMemoryTestSource, TestSource

__all__ = [
    "ActiveTest",
    "AutomaticWinnerScheduler",
    "DefaultCriteria",
    "EvaluationOutcome",
    "EvaluationRecord",
    "ExperimentStatus",
    "InMemoryTestSource",
    "KeyedLock",
    "ManualEvaluationRequest",
    "SchedulerConfig",
    "SchedulerMetrics",
    "TestSource",
    "TickResult",
]
