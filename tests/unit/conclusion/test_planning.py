"""Tests for implementation and rollback planning."""

import pytest
from pydantic import ValidationError

from abpilot.conclusion.models import (
    EscalationStep,
    ImplementationPhase,
    ImplementationPlan,
    ImplementationStrategy,
    MonitoringPlan,
    RiskTolerance,
    RollbackAction,
)
from abpilot.conclusion.planning import (
    HOLD_HOURS,
    build_implementation_plan,
    build_phases,
    build_rollback_plan,
    choose_strategy,
    phase_duration_hours,
)
from abpilot.core.settings import RolloutSettings, StatisticsSettings


@pytest.mark.parametrize(
    ("score", "tolerance", "expected"),
    [
        (10.0, RiskTolerance.CONSERVATIVE, ImplementationStrategy.GRADUAL),
        (40.0, RiskTolerance.CONSERVATIVE, ImplementationStrategy.STAGED),
        (60.0, RiskTolerance.CONSERVATIVE, ImplementationStrategy.DELAYED),
        (10.0, RiskTolerance.MODERATE, ImplementationStrategy.IMMEDIATE),
        (34.5, RiskTolerance.MODERATE, ImplementationStrategy.GRADUAL),
        (70.0, RiskTolerance.MODERATE, ImplementationStrategy.STAGED),
        (100.0, RiskTolerance.MODERATE, ImplementationStrategy.DELAYED),
        (40.0, RiskTolerance.AGGRESSIVE, ImplementationStrategy.IMMEDIATE),
        (70.0, RiskTolerance.AGGRESSIVE, ImplementationStrategy.GRADUAL),
        (95.0, RiskTolerance.AGGRESSIVE, ImplementationStrategy.STAGED),
    ],
)
def test_choose_strategy(
    score: float, tolerance: RiskTolerance, expected: ImplementationStrategy
) -> None:
    assert choose_strategy(score, tolerance) == expected


class TestPhaseDuration:
    """Tests for phase sizing."""

    def test_hold_phase(self) -> None:
        hours = phase_duration_hours(
            0.0, 0.1, RolloutSettings(), StatisticsSettings()
        )
        assert hours == HOLD_HOURS

    def test_small_share_clamped_to_max(self) -> None:
        hours = phase_duration_hours(
            25.0, 0.1, RolloutSettings(), StatisticsSettings()
        )
        assert hours == 72.0

    def test_high_traffic_clamped_to_min(self) -> None:
        rollout = RolloutSettings(expected_daily_visitors=10_000_000)
        assert phase_duration_hours(100.0, 0.1, rollout, StatisticsSettings()) == 1.0

    def test_more_traffic_is_shorter(self) -> None:
        rollout = RolloutSettings()
        half = phase_duration_hours(50.0, 0.1, rollout, StatisticsSettings())
        full = phase_duration_hours(100.0, 0.1, rollout, StatisticsSettings())
        assert full == pytest.approx(half / 2)

    def test_degenerate_baseline_uses_max(self) -> None:
        rollout = RolloutSettings(max_phase_hours=48.0)
        assert phase_duration_hours(50.0, 0.0, rollout, StatisticsSettings()) == 48.0


class TestBuildPlan:
    """Tests for assembled implementation plans."""

    @pytest.mark.parametrize(
        ("strategy", "steps"),
        [
            (ImplementationStrategy.IMMEDIATE, [100.0]),
            (ImplementationStrategy.GRADUAL, [25.0, 50.0, 100.0]),
            (ImplementationStrategy.STAGED, [10.0, 50.0, 100.0]),
            (ImplementationStrategy.DELAYED, [0.0, 10.0, 50.0, 100.0]),
        ],
    )
    def test_rollout_steps(
        self, strategy: ImplementationStrategy, steps: list[float]
    ) -> None:
        phases = build_phases(strategy, 0.1, RolloutSettings(), StatisticsSettings())
        assert [p.rollout_percentage for p in phases] == steps

    def test_delayed_starts_with_hold(self) -> None:
        phases = build_phases(
            ImplementationStrategy.DELAYED,
            0.1,
            RolloutSettings(),
            StatisticsSettings(),
        )
        assert phases[0].name == "Hold"
        assert phases[0].duration == HOLD_HOURS

    def test_monitoring_plan_and_success_criteria(self) -> None:
        plan = build_implementation_plan(
            ImplementationStrategy.GRADUAL,
            0.1,
            0.2,
            6.0,
            RolloutSettings(),
            StatisticsSettings(),
        )
        monitoring = plan.monitoring_plan
        assert monitoring is not None
        assert len(monitoring.checkpoints) == 12
        assert monitoring.checkpoints[-1].offset_hours == pytest.approx(
            plan.total_duration_hours
        )
        assert monitoring.duration_hours == pytest.approx(
            plan.total_duration_hours + 24.0
        )
        assert monitoring.alert_thresholds["error_rate_increase"] == 0.05
        assert [c.metric for c in plan.success_criteria] == [
            "conversion_rate",
            "revenue_per_visitor",
        ]

    def test_escalation_contacts_accumulate(self) -> None:
        """Test each escalation level notifies everyone below it too."""
        rollout = RolloutSettings(escalation_contacts=["owner", "lead", "pager"])
        plan = build_implementation_plan(
            ImplementationStrategy.STAGED, 0.1, 0.2, 6.0, rollout, StatisticsSettings()
        )
        assert plan.monitoring_plan is not None
        steps = plan.monitoring_plan.escalation_plan

        assert [s.level for s in steps] == [1, 2, 3]
        assert [s.action for s in steps] == [
            RollbackAction.ALERT,
            RollbackAction.PAUSE,
            RollbackAction.ROLLBACK,
        ]
        assert [s.contacts for s in steps] == [
            ["owner"],
            ["owner", "lead"],
            ["owner", "lead", "pager"],
        ]

    def test_short_contact_list_reused_at_higher_levels(self) -> None:
        rollout = RolloutSettings(escalation_contacts=["owner"])
        plan = build_implementation_plan(
            ImplementationStrategy.GRADUAL, 0.1, 0.2, 6.0, rollout, StatisticsSettings()
        )
        assert plan.monitoring_plan is not None
        steps = plan.monitoring_plan.escalation_plan
        assert all(s.contacts == ["owner"] for s in steps)

    def test_escalation_levels_must_be_consecutive(self) -> None:
        step = EscalationStep(
            level=2, condition="degraded", action=RollbackAction.PAUSE
        )
        with pytest.raises(ValidationError, match="escalation levels"):
            MonitoringPlan(duration_hours=1.0, escalation_plan=[step])

class TestPlanValidation:
    def _phase(self, phase_id: str, percentage: float) -> ImplementationPhase:
        return ImplementationPhase(
            id=phase_id, name=phase_id, rollout_percentage=percentage, duration=1.0
        )

    def test_decreasing_rollout_rejected(self) -> None:
        with pytest.raises(ValidationError, match="lowers rollout"):
            ImplementationPlan(
                strategy=ImplementationStrategy.GRADUAL,
                phases=[self._phase("p1", 50), self._phase("p2", 25)],
            )

    def test_must_end_at_full_rollout(self) -> None:
        with pytest.raises(ValidationError, match="100%"):
            ImplementationPlan(
                strategy=ImplementationStrategy.GRADUAL,
                phases=[self._phase("p1", 50)],
            )

    def test_needs_a_phase(self) -> None:
        with pytest.raises(ValidationError, match="at least one phase"):
            ImplementationPlan(strategy=ImplementationStrategy.GRADUAL, phases=[])


class TestRollbackPlan:
    """Tests for rollback triggers and procedure."""

    def test_moderate_risk_pauses_on_conversion_drop(self) -> None:
        plan = build_rollback_plan("control", 59.9, RolloutSettings())
        conversion = next(t for t in plan.triggers if t.metric == "conversion_rate")
        assert conversion.action == RollbackAction.PAUSE
        assert conversion.threshold == 0.10
        assert conversion.timeframe == 30.0

    def test_high_risk_rolls_back_on_conversion_drop(self) -> None:
        plan = build_rollback_plan("control", 60.0, RolloutSettings())
        conversion = next(t for t in plan.triggers if t.metric == "conversion_rate")
        assert conversion.action == RollbackAction.ROLLBACK

    def test_procedure_and_time_to_rollback(self) -> None:
        plan = build_rollback_plan(
            "control", 10.0, RolloutSettings(detection_latency_minutes=3.0)
        )
        assert [s.action for s in plan.procedure] == [
            "pause_traffic",
            "restore_control",
            "verify_restoration",
        ]
        assert plan.time_to_rollback == pytest.approx(5.0)
        assert plan.fallback_variant == "control"
