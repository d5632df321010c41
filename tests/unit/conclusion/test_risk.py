"""Tests for risk scoring and business impact."""

import pytest

from abpilot.conclusion.models import (
    ImplementationStrategy,
    RiskFactorType,
    RiskSeverity,
    RiskTolerance,
    SelectionCriteria,
    StrategicContext,
)
from abpilot.conclusion.risk import (
    assess_risk,
    audience_risk,
    implementation_risk,
    severity_for,
    statistical_risk,
    strategic_alignment,
    technical_risk,
)
from abpilot.core.exceptions import MissingContextError
from abpilot.statistics.models import ConfidenceInterval, VariantResult
from tests.factories import make_variant


def make_result(improvement: float, half_width: float) -> VariantResult:
    return VariantResult(
        variant_id="variant_b",
        impressions=5000,
        conversions=600,
        conversion_rate=0.12,
        confidence_interval=ConfidenceInterval(lower=0.11, upper=0.13),
        p_value=0.001,
        improvement=improvement,
        improvement_interval=ConfidenceInterval(
            lower=improvement - half_width, upper=improvement + half_width
        ),
        is_significant=True,
    )


@pytest.mark.parametrize(
    ("score", "severity"),
    [
        (0.0, RiskSeverity.LOW),
        (24.9, RiskSeverity.LOW),
        (25.0, RiskSeverity.MEDIUM),
        (50.0, RiskSeverity.HIGH),
        (75.0, RiskSeverity.CRITICAL),
    ],
)
def test_severity_for(score: float, severity: RiskSeverity) -> None:
    assert severity_for(score) == severity


class TestRiskFactors:
    """Tests for the individual risk factors."""

    def test_statistical_risk_from_interval(self) -> None:
        factor = statistical_risk(make_result(0.20, 0.10))
        assert factor.score == pytest.approx(50.0)
        assert factor.weight == 0.4
        assert factor.mitigation is not None

    def test_statistical_risk_capped(self) -> None:
        assert statistical_risk(make_result(0.05, 0.20)).score == 100.0

    def test_unbounded_improvement(self) -> None:
        assert statistical_risk(make_result(0.0, 0.1)).score == 100.0

    def test_implementation_risk_is_new_exposure(self) -> None:
        winner = make_variant("variant_b", 100, 10, traffic_percentage=20)
        factor = implementation_risk(winner)
        assert factor.score == pytest.approx(80.0)
        assert factor.severity == RiskSeverity.CRITICAL

    def test_context_free_factors_are_zero(self) -> None:
        assert audience_risk(None).score == 0.0
        assert technical_risk(StrategicContext()).score == 0.0
        assert audience_risk(None).mitigation is None

    def test_context_factors(self) -> None:
        context = StrategicContext(concurrent_test_overlap=0.3, dependency_count=10)
        assert audience_risk(context).score == pytest.approx(30.0)
        assert technical_risk(context).score == 100.0


def test_assess_risk_weights_factors() -> None:
    winner = make_variant("variant_b", 5000, 600)
    context = StrategicContext(concurrent_test_overlap=0.5, dependency_count=2)
    risk = assess_risk(
        make_result(0.20, 0.10), winner, context, RiskTolerance.CONSERVATIVE
    )

    # 0.4 * 50 + 0.2 * 50 + 0.2 * 50 + 0.2 * 30
    assert risk.overall_risk_score == pytest.approx(46.0)
    assert [f.type for f in risk.risk_factors] == list(RiskFactorType)
    assert risk.recommended_approach == ImplementationStrategy.STAGED
    assert len(risk.mitigation_strategies) == 4


class TestStrategicAlignment:
    """Tests for the 0-10 alignment score."""

    def test_tags_and_priority_are_averaged(self) -> None:
        context = StrategicContext(tags=["growth", "misc"], priority=3)
        assert strategic_alignment(context, {"growth": 9.0}) == pytest.approx(7.0)

    def test_priority_only(self) -> None:
        assert strategic_alignment(StrategicContext(priority=1), {}) == 0.0

    def test_missing_context(self) -> None:
        with pytest.raises(MissingContextError) as exc_info:
            strategic_alignment(None, {}, test_id="checkout")
        assert exc_info.value.field_name == "context"
        assert exc_info.value.test_id == "checkout"

    def test_unweighted_tags(self) -> None:
        with pytest.raises(MissingContextError) as exc_info:
            strategic_alignment(StrategicContext(tags=["misc"]), {"growth": 9.0})
        assert exc_info.value.field_name == "tags"


def test_selection_criteria_from_percentages() -> None:
    criteria = SelectionCriteria.from_scheduler_criteria(99.0, 10.0, "aggressive")
    assert criteria.minimum_confidence == pytest.approx(0.99)
    assert criteria.minimum_improvement == pytest.approx(0.10)
    assert criteria.risk_tolerance == RiskTolerance.AGGRESSIVE
