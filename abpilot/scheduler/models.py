"""Data models for the automatic winner scheduler.

Configuration fields keep the external units: ``check_interval`` in
minutes, ``minimum_confidence`` and ``minimum_improvement`` in percent.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from abpilot.conclusion.models import (
    RiskTolerance,
    SelectionCriteria,
    StrategicContext,
)
from abpilot.core.settings import SchedulerSettings
from abpilot.statistics.models import AnalysisStatus, RecommendedAction, Variant


class ExperimentStatus(str, Enum):
    """Lifecycle status reported by the analytics collaborator."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class EvaluationOutcome(str, Enum):
    WINNER = "winner"
    NO_WINNER = "no_winner"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMEOUT = "timeout"


class DefaultCriteria(BaseModel):
    minimum_confidence: float = Field(default=95.0, gt=0.0, le=100.0)
    minimum_improvement: float = Field(default=5.0, ge=0.0)
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE


class SchedulerConfig(BaseModel):
    """Live scheduler configuration."""

    enabled: bool = True
    check_interval: float = Field(default=30.0, gt=0.0, description="Minutes")
    max_concurrent_evaluations: int = Field(default=5, ge=1, le=64)
    default_criteria: DefaultCriteria = Field(default_factory=DefaultCriteria)
    max_backoff_multiplier: float = Field(default=5.0, ge=1.0)

    @classmethod
    def from_settings(cls, settings: SchedulerSettings) -> "SchedulerConfig":
        return cls(
            enabled=settings.enabled,
            check_interval=settings.check_interval,
            max_concurrent_evaluations=settings.max_concurrent_evaluations,
            default_criteria=DefaultCriteria(
                minimum_confidence=settings.minimum_confidence,
                minimum_improvement=settings.minimum_improvement,
                risk_tolerance=RiskTolerance(settings.risk_tolerance),
            ),
            max_backoff_multiplier=settings.max_backoff_multiplier,
        )

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval * 60.0

    def selection_criteria(self) -> SelectionCriteria:
        """Winner thresholds converted to ratios."""
        return SelectionCriteria.from_scheduler_criteria(
            self.default_criteria.minimum_confidence,
            self.default_criteria.minimum_improvement,
            self.default_criteria.risk_tolerance,
        )


class SchedulerMetrics(BaseModel):
    """Snapshot of scheduler counters. ``*_today`` reset at local midnight."""

    total_tests_monitored: int = 0
    tests_evaluated_today: int = 0
    winners_selected_today: int = 0
    failed_evaluations_today: int = 0
    total_evaluations: int = 0
    total_winners: int = 0
    total_failures: int = 0
    success_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Share of evaluations that did not fail",
    )
    last_run_at: datetime | None = None
    last_evaluation_errors: dict[str, str] = Field(default_factory=dict)


class ActiveTest(BaseModel):
    """A running experiment as provided by the analytics collaborator."""

    test_id: str
    name: str = ""
    variants: list[Variant]
    auto_winner_enabled: bool = True
    status: ExperimentStatus = ExperimentStatus.RUNNING
    context: StrategicContext | None = None

    @property
    def is_eligible(self) -> bool:
        return self.auto_winner_enabled and self.status == ExperimentStatus.RUNNING


class EvaluationRecord(BaseModel):
    """Result of the latest evaluation of one test."""

    test_id: str
    evaluated_at: datetime
    outcome: EvaluationOutcome
    analysis_status: AnalysisStatus | None = None
    recommended_action: RecommendedAction | None = None
    overall_significance: float | None = None
    alerts_raised: int = 0
    winner_variant_id: str | None = None
    duration_seconds: float = 0.0
    consecutive_failures: int = 0
    last_error: str | None = None
    skip_reason: str | None = None


class ManualEvaluationRequest(BaseModel):
    test_id: str
    force_evaluation: bool = True


class TickResult(BaseModel):
    """Summary of one scheduler pass."""

    correlation_id: str
    started_at: datetime
    finished_at: datetime
    forced: bool = False
    records: list[EvaluationRecord] = Field(default_factory=list)

    def count(self, outcome: EvaluationOutcome) -> int:
        return sum(1 for r in self.records if r.outcome == outcome)
