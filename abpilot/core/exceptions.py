"""abpilot exceptions."""

from typing import Any


class ABPilotError(Exception):
    """Base exception for all abpilot errors."""

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.test_id = test_id
        self.cause = cause
        super().__init__(message)


class ConfigurationError(ABPilotError):
    """Invalid settings or configuration file."""


class InvalidInputError(ABPilotError):
    """Malformed variant counters or traffic split."""

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        variant_id: str | None = None,
    ) -> None:
        self.variant_id = variant_id
        if variant_id:
            message = f"Variant {variant_id}: {message}"
        super().__init__(message, test_id=test_id)


class InsufficientDataError(ABPilotError):
    """Reserved name for the insufficient-data condition.

    Never raised. Analyses report ``AnalysisStatus.INSUFFICIENT_DATA``
    instead, so callers can keep polling without exception handling.
    """


class MissingContextError(ABPilotError):
    """Optional business context is absent; defaults apply."""

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        field_name: str | None = None,
    ) -> None:
        self.field_name = field_name
        super().__init__(message, test_id=test_id)


class SchedulerTickError(ABPilotError):
    """A scheduler tick could not enumerate tests. Retried with backoff."""

    def __init__(
        self,
        message: str = "Scheduler tick failed",
        attempt: int = 1,
        retry_in_seconds: float | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.attempt = attempt
        self.retry_in_seconds = retry_in_seconds
        super().__init__(message, cause=cause)


class EvaluationTimeoutError(ABPilotError):
    """A single test evaluation exceeded the watchdog limit."""

    def __init__(
        self,
        message: str = "Evaluation timed out",
        test_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, test_id=test_id)


class AlreadyImplementingError(ABPilotError):
    """A rollout for this test already exists."""

    def __init__(self, test_id: str, state: str | None = None) -> None:
        self.state = state
        detail = f" (state: {state})" if state else ""
        super().__init__(
            f"Test {test_id} already has an implementation{detail}",
            test_id=test_id,
        )


class RollbackFailedError(ABPilotError):
    """A rollback remediation step failed; manual intervention required."""

    def __init__(
        self,
        message: str,
        test_id: str | None = None,
        step: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.step = step
        super().__init__(message, test_id=test_id, cause=cause)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the failure for alert payloads."""
        return {
            "test_id": self.test_id,
            "step": self.step,
            "error": self.message,
            "cause": repr(self.cause) if self.cause else None,
        }
