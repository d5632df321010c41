"""Core infrastructure: settings, logging, metrics and exceptions."""

from abpilot.core.exceptions import (
    ABPilotError,
    AlreadyImplementingError,
    ConfigurationError,
    EvaluationTimeoutError,
    InsufficientDataError,
    InvalidInputError,
    MissingContextError,
    RollbackFailedError,
    SchedulerTickError,
)
from abpilot.core.settings import ABPilotSettings, get_cached_settings, get_settings

__all__ = [
    "ABPilotError",
    "ABPilotSettings",
    "AlreadyImplementingError",
    "ConfigurationError",
    "EvaluationTimeoutError",
    "InsufficientDataError",
    "InvalidInputError",
    "MissingContextError",
    "RollbackFailedError",
    "SchedulerTickError",
    "get_cached_settings",
    "get_settings",
]
