"""Data models for test conclusions, risk and rollout planning."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class RiskTolerance(str, Enum):
    """How much rollout risk the organization accepts."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class ImplementationStrategy(str, Enum):
    """How a winning variant is rolled out."""

    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    STAGED = "staged"
    DELAYED = "delayed"


class RollbackAction(str, Enum):
    """What happens when a rollback trigger is breached."""

    ROLLBACK = "rollback"
    PAUSE = "pause"
    ALERT = "alert"


class RiskFactorType(str, Enum):
    STATISTICAL = "statistical"
    IMPLEMENTATION = "implementation"
    AUDIENCE = "audience"
    TECHNICAL = "technical"


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SelectionCriteria(BaseModel):
    """Thresholds a winner must pass. Ratios, not percentages."""

    minimum_confidence: float = Field(default=0.95, gt=0.0, le=1.0)
    minimum_improvement: float = Field(default=0.05, ge=0.0)
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE

    @classmethod
    def from_scheduler_criteria(
        cls,
        minimum_confidence: float,
        minimum_improvement: float,
        risk_tolerance: str | RiskTolerance = RiskTolerance.MODERATE,
    ) -> "SelectionCriteria":
        """Build criteria from the percentage-based scheduler config.

        Args:
            minimum_confidence: Minimum confidence in percent (e.g. 95).
            minimum_improvement: Minimum improvement in percent (e.g. 5).
            risk_tolerance: Risk tolerance name.
        """
        return cls(
            minimum_confidence=minimum_confidence / 100.0,
            minimum_improvement=minimum_improvement / 100.0,
            risk_tolerance=RiskTolerance(risk_tolerance),
        )


class StrategicContext(BaseModel):
    """Optional business context for a test.

    Every field may be absent; the conclusion engine falls back to
    neutral defaults for whatever is missing.
    """

    tags: list[str] = Field(default_factory=list)
    priority: int | None = Field(
        default=None, ge=1, le=5, description="Business priority, 5 is highest"
    )
    audience_size: int | None = Field(
        default=None, ge=0, description="Addressable visitors for revenue projection"
    )
    concurrent_test_overlap: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Share of the audience also in other running tests",
    )
    dependency_count: int | None = Field(
        default=None, ge=0, description="Systems the change touches"
    )


class WinnerSelection(BaseModel):
    variant_id: str
    variant_name: str = ""
    selection_reason: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    expected_improvement: float
    implementation_strategy: ImplementationStrategy


class BusinessImpact(BaseModel):
    """Projected business effect of shipping the winner."""

    revenue_impact: float
    revenue_impact_range: tuple[float, float]
    audience_reach: int = Field(..., ge=0)
    strategic_alignment: float = Field(..., ge=0.0, le=10.0)
    competitive_advantage: float = Field(default=5.0, ge=0.0, le=10.0)
    operational_complexity: float = Field(default=0.0, ge=0.0, le=10.0)


class RiskFactor(BaseModel):
    type: RiskFactorType
    score: float = Field(..., ge=0.0, le=100.0)
    weight: float = Field(..., ge=0.0, le=1.0)
    severity: RiskSeverity
    description: str
    mitigation: str | None = None


class RiskAssessment(BaseModel):
    overall_risk_score: float = Field(..., ge=0.0, le=100.0)
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    recommended_approach: ImplementationStrategy
    mitigation_strategies: list[str] = Field(default_factory=list)
    max_acceptable_risk: float = 70.0


class ImplementationPhase(BaseModel):
    id: str
    name: str
    rollout_percentage: float = Field(..., ge=0.0, le=100.0)
    duration: float = Field(..., gt=0.0, description="Phase length in hours")
    description: str = ""


class SuccessCriterion(BaseModel):
    metric: str
    target: float
    tolerance: float
    timeframe_hours: float


class EscalationStep(BaseModel):
    """One rung of the escalation ladder; higher levels add contacts."""

    level: int = Field(..., ge=1)
    condition: str
    action: RollbackAction
    contacts: list[str] = Field(default_factory=list)


class MonitoringCheckpoint(BaseModel):
    phase_id: str
    fraction: float = Field(..., gt=0.0, le=1.0)
    offset_hours: float = Field(..., ge=0.0, description="Hours from rollout start")


class MonitoringPlan(BaseModel):
    duration_hours: float
    checkpoints: list[MonitoringCheckpoint] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    alert_thresholds: dict[str, float] = Field(default_factory=dict)
    escalation_plan: list[EscalationStep] = Field(default_factory=list)

    @field_validator("escalation_plan")
    @classmethod
    def levels_are_consecutive(cls, v: list[EscalationStep]) -> list[EscalationStep]:
        if [s.level for s in v] != list(range(1, len(v) + 1)):
            raise ValueError("escalation levels must run 1, 2, 3 ... in order")
        return v


class ImplementationPlan(BaseModel):
    """Ordered rollout phases ending at full traffic."""

    strategy: ImplementationStrategy
    phases: list[ImplementationPhase]
    monitoring_plan: MonitoringPlan | None = None
    success_criteria: list[SuccessCriterion] = Field(default_factory=list)

    @field_validator("phases")
    @classmethod
    def validate_phases(
        cls, phases: list[ImplementationPhase]
    ) -> list[ImplementationPhase]:
        """Rollout percentages never decrease and end at 100."""
        if not phases:
            raise ValueError("An implementation plan needs at least one phase")
        for earlier, later in zip(phases, phases[1:]):
            if later.rollout_percentage < earlier.rollout_percentage:
                raise ValueError(
                    f"Phase {later.id} lowers rollout from "
                    f"{earlier.rollout_percentage}% to {later.rollout_percentage}%"
                )
        if phases[-1].rollout_percentage != 100.0:
            raise ValueError("The final phase must roll out to 100%")
        return phases

    @property
    def total_duration_hours(self) -> float:
        return sum(p.duration for p in self.phases)


class RollbackTrigger(BaseModel):
    """A live metric condition that forces an action.

    ``threshold`` is an absolute increase for ``error_rate`` and a
    relative drop for ``conversion_rate`` and ``revenue``.
    """

    metric: str
    threshold: float = Field(..., gt=0.0)
    timeframe: float = Field(..., gt=0.0, description="Window in minutes")
    action: RollbackAction


class RollbackStep(BaseModel):
    order: int = Field(..., ge=1)
    action: str
    description: str
    owner: str
    estimated_minutes: float = Field(..., gt=0.0)
    dependencies: list[str] = Field(default_factory=list)


class RollbackPlan(BaseModel):
    triggers: list[RollbackTrigger]
    procedure: list[RollbackStep]
    time_to_rollback: float = Field(..., ge=0.0, description="Minutes")
    fallback_variant: str

    @model_validator(mode="after")
    def check_procedure_order(self) -> "RollbackPlan":
        orders = [step.order for step in self.procedure]
        if orders != sorted(orders):
            raise ValueError("Rollback procedure steps must be ordered")
        return self


class TestConclusion(BaseModel):
    """Decision to ship a winner, with its impact, risk and plans."""

    __test__ = False

    test_id: str
    conclusion_time: datetime
    conclusion_reason: str
    triggered_rules: list[str] = Field(default_factory=list)
    selected_winner: WinnerSelection | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    business_impact: BusinessImpact
    risk_assessment: RiskAssessment
    implementation_plan: ImplementationPlan
    rollback_plan: RollbackPlan
    control_variant_id: str
