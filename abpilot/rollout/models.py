"""Data models for winner rollouts."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from abpilot.conclusion.models import RollbackAction


class RolloutState(str, Enum):
    """Rollout lifecycle. ``IN_PHASE`` with ``phase_index=k-1`` is PHASE_k."""

    PENDING = "pending"
    IN_PHASE = "in_phase"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (RolloutState.COMPLETED, RolloutState.ROLLED_BACK)


class LiveMetricsSample(BaseModel):
    """Live metrics for the winner compared with control baselines."""

    timestamp: datetime | None = None
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    baseline_error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    conversion_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    baseline_conversion_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    revenue_per_visitor: float = Field(default=0.0, ge=0.0)
    baseline_revenue_per_visitor: float = Field(default=0.0, ge=0.0)


class TriggerBreach(BaseModel):
    metric: str
    value: float
    threshold: float
    action: RollbackAction
    detected_at: datetime


class ImplementationStatus(BaseModel):
    """Read model for a rollout."""

    test_id: str
    winner_variant_id: str
    control_variant_id: str
    state: RolloutState
    phase_index: int | None = None
    phase_id: str | None = None
    phase_name: str | None = None
    phase_count: int
    winner_traffic_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    target_percentage: float | None = None
    paused: bool = False
    samples_taken: int = 0
    started_at: datetime | None = None
    phase_started_at: datetime | None = None
    finished_at: datetime | None = None
    rollback_reason: str | None = None
    last_error: str | None = None
    breaches: list[TriggerBreach] = Field(default_factory=list)

    @property
    def label(self) -> str:
        """State label such as ``PENDING``, ``PHASE_2`` or ``ROLLED_BACK``."""
        if self.state == RolloutState.IN_PHASE and self.phase_index is not None:
            return f"PHASE_{self.phase_index + 1}"
        return self.state.name
