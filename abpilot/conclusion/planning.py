"""Implementation and rollback planning for a selected winner.

Phase durations are sized so that each phase observes enough visitors
to detect a trigger-level conversion drop at the configured confidence
and power.
"""

from abpilot.conclusion.models import (
    ImplementationPhase,
    ImplementationPlan,
    EscalationStep,
    ImplementationStrategy,
    MonitoringCheckpoint,
    MonitoringPlan,
    RiskTolerance,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
    RollbackTrigger,
    SuccessCriterion,
)
from abpilot.core.settings import RolloutSettings, StatisticsSettings
from abpilot.statistics.strategies import required_sample_size

# (upper bound on risk score, strategy) per tolerance; first match wins.
STRATEGY_MATRIX: dict[RiskTolerance, list[tuple[float, ImplementationStrategy]]] = {
    RiskTolerance.CONSERVATIVE: [
        (20.0, ImplementationStrategy.GRADUAL),
        (50.0, ImplementationStrategy.STAGED),
        (101.0, ImplementationStrategy.DELAYED),
    ],
    RiskTolerance.MODERATE: [
        (30.0, ImplementationStrategy.IMMEDIATE),
        (60.0, ImplementationStrategy.GRADUAL),
        (80.0, ImplementationStrategy.STAGED),
        (101.0, ImplementationStrategy.DELAYED),
    ],
    RiskTolerance.AGGRESSIVE: [
        (50.0, ImplementationStrategy.IMMEDIATE),
        (80.0, ImplementationStrategy.GRADUAL),
        (101.0, ImplementationStrategy.STAGED),
    ],
}

ROLLOUT_STEPS: dict[ImplementationStrategy, list[float]] = {
    ImplementationStrategy.IMMEDIATE: [100.0],
    ImplementationStrategy.GRADUAL: [25.0, 50.0, 100.0],
    ImplementationStrategy.STAGED: [10.0, 50.0, 100.0],
    ImplementationStrategy.DELAYED: [0.0, 10.0, 50.0, 100.0],
}

HOLD_HOURS = 24.0
POST_ROLLOUT_MONITORING_HOURS = 24.0
CHECKPOINT_FRACTIONS = (0.25, 0.5, 0.75, 1.0)
ESCALATION_LADDER = (
    ("Minor metric deviation", RollbackAction.ALERT),
    ("Significant metric degradation", RollbackAction.PAUSE),
    ("Critical performance issues", RollbackAction.ROLLBACK),
)
# Risk score at which a conversion drop rolls back instead of pausing.
STRICT_TRIGGER_RISK = 60.0


def choose_strategy(
    risk_score: float, risk_tolerance: RiskTolerance
) -> ImplementationStrategy:
    """Pick a rollout strategy from the risk x tolerance matrix."""
    for bound, strategy in STRATEGY_MATRIX[risk_tolerance]:
        if risk_score < bound:
            return strategy
    return ImplementationStrategy.DELAYED


def phase_duration_hours(
    rollout_percentage: float,
    baseline_rate: float,
    rollout: RolloutSettings,
    statistics: StatisticsSettings,
) -> float:
    """Hours a phase must run to detect a trigger-level conversion drop."""
    if rollout_percentage <= 0:
        hours = HOLD_HOURS
    else:
        needed = required_sample_size(
            baseline_rate,
            rollout.conversion_drop_threshold,
            statistics.confidence_level,
            statistics.power,
        )
        if needed is None:
            hours = rollout.max_phase_hours
        else:
            hourly = rollout.expected_daily_visitors / 24.0 * rollout_percentage / 100.0
            hours = needed / hourly
    return min(rollout.max_phase_hours, max(rollout.min_phase_hours, hours))


def build_phases(
    strategy: ImplementationStrategy,
    baseline_rate: float,
    rollout: RolloutSettings,
    statistics: StatisticsSettings,
) -> list[ImplementationPhase]:
    phases = []
    for index, percentage in enumerate(ROLLOUT_STEPS[strategy], start=1):
        if percentage == 0:
            name = "Hold"
            description = "Hold the winner at 0% while stakeholders sign off"
        elif percentage == 100:
            name = f"Phase {index}: full rollout"
            description = "Serve the winner to all traffic"
        else:
            name = f"Phase {index}: {percentage:.0f}% rollout"
            description = f"Serve the winner to {percentage:.0f}% of traffic"
        phases.append(
            ImplementationPhase(
                id=f"phase_{index}",
                name=name,
                rollout_percentage=percentage,
                duration=phase_duration_hours(
                    percentage, baseline_rate, rollout, statistics
                ),
                description=description,
            )
        )
    return phases


def build_monitoring_plan(
    phases: list[ImplementationPhase], rollout: RolloutSettings
) -> MonitoringPlan:
    checkpoints = []
    start = 0.0
    for phase in phases:
        for fraction in CHECKPOINT_FRACTIONS:
            checkpoints.append(
                MonitoringCheckpoint(
                    phase_id=phase.id,
                    fraction=fraction,
                    offset_hours=start + phase.duration * fraction,
                )
            )
        start += phase.duration
    contacts = rollout.escalation_contacts
    escalation = [
        EscalationStep(
            level=level,
            condition=condition,
            action=action,
            contacts=contacts[:level],
        )
        for level, (condition, action) in enumerate(ESCALATION_LADDER, start=1)
    ]
    return MonitoringPlan(
        duration_hours=start + POST_ROLLOUT_MONITORING_HOURS,
        checkpoints=checkpoints,
        metrics=["conversion_rate", "revenue_per_visitor", "error_rate"],
        alert_thresholds={
            "conversion_rate_drop": rollout.conversion_drop_threshold,
            "revenue_drop": rollout.revenue_drop_threshold,
            "error_rate_increase": rollout.error_rate_threshold,
        },
        escalation_plan=escalation,
    )


def build_success_criteria(
    expected_improvement: float, revenue_per_visitor: float
) -> list[SuccessCriterion]:
    return [
        SuccessCriterion(
            metric="conversion_rate",
            target=expected_improvement,
            tolerance=0.02,
            timeframe_hours=24.0,
        ),
        SuccessCriterion(
            metric="revenue_per_visitor",
            target=revenue_per_visitor,
            tolerance=0.05,
            timeframe_hours=48.0,
        ),
    ]


def build_implementation_plan(
    strategy: ImplementationStrategy,
    baseline_rate: float,
    expected_improvement: float,
    revenue_per_visitor: float,
    rollout: RolloutSettings,
    statistics: StatisticsSettings,
) -> ImplementationPlan:
    """Assemble phases, monitoring checkpoints and success criteria."""
    phases = build_phases(strategy, baseline_rate, rollout, statistics)
    return ImplementationPlan(
        strategy=strategy,
        phases=phases,
        monitoring_plan=build_monitoring_plan(phases, rollout),
        success_criteria=build_success_criteria(
            expected_improvement, revenue_per_visitor
        ),
    )


ROLLBACK_PROCEDURE: list[RollbackStep] = [
    RollbackStep(
        order=1,
        action="pause_traffic",
        description="Stop ramping traffic to the winner",
        owner="DevOps Team",
        estimated_minutes=2.0,
    ),
    RollbackStep(
        order=2,
        action="restore_control",
        description="Route all traffic back to the control variant",
        owner="DevOps Team",
        estimated_minutes=5.0,
        dependencies=["pause_traffic"],
    ),
    RollbackStep(
        order=3,
        action="verify_restoration",
        description="Confirm the router serves 100% control",
        owner="Analytics Team",
        estimated_minutes=15.0,
        dependencies=["restore_control"],
    ),
]


def build_rollback_plan(
    control_variant_id: str, risk_score: float, rollout: RolloutSettings
) -> RollbackPlan:
    """Derive triggers and the remediation procedure.

    High-risk rollouts roll back on a conversion drop instead of pausing.
    """
    conversion_action = (
        RollbackAction.ROLLBACK
        if risk_score >= STRICT_TRIGGER_RISK
        else RollbackAction.PAUSE
    )
    triggers = [
        RollbackTrigger(
            metric="error_rate",
            threshold=rollout.error_rate_threshold,
            timeframe=rollout.error_rate_timeframe_minutes,
            action=RollbackAction.ROLLBACK,
        ),
        RollbackTrigger(
            metric="conversion_rate",
            threshold=rollout.conversion_drop_threshold,
            timeframe=rollout.conversion_drop_timeframe_minutes,
            action=conversion_action,
        ),
        RollbackTrigger(
            metric="revenue",
            threshold=rollout.revenue_drop_threshold,
            timeframe=rollout.revenue_drop_timeframe_minutes,
            action=RollbackAction.ALERT,
        ),
    ]
    procedure = [step.model_copy(deep=True) for step in ROLLBACK_PROCEDURE]
    fastest = min(step.estimated_minutes for step in procedure)
    return RollbackPlan(
        triggers=triggers,
        procedure=procedure,
        time_to_rollback=rollout.detection_latency_minutes + fastest,
        fallback_variant=control_variant_id,
    )
