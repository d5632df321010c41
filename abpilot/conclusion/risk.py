"""Rollout risk scoring and business impact projection."""

import logging

from abpilot.conclusion.models import (
    BusinessImpact,
    ImplementationStrategy,
    RiskAssessment,
    RiskFactor,
    RiskFactorType,
    RiskSeverity,
    RiskTolerance,
    StrategicContext,
)
from abpilot.core.exceptions import MissingContextError
from abpilot.statistics.models import Variant, VariantResult

logger = logging.getLogger(__name__)

RISK_WEIGHTS: dict[RiskFactorType, float] = {
    RiskFactorType.STATISTICAL: 0.4,
    RiskFactorType.IMPLEMENTATION: 0.2,
    RiskFactorType.AUDIENCE: 0.2,
    RiskFactorType.TECHNICAL: 0.2,
}

MITIGATIONS: dict[RiskFactorType, str] = {
    RiskFactorType.STATISTICAL: "Roll out gradually and re-check the lift per phase",
    RiskFactorType.IMPLEMENTATION: "Keep early phases small to limit exposure",
    RiskFactorType.AUDIENCE: "Pause overlapping tests during rollout",
    RiskFactorType.TECHNICAL: "Verify dependent systems before each phase",
}

APPROACH_BY_TOLERANCE: dict[RiskTolerance, ImplementationStrategy] = {
    RiskTolerance.CONSERVATIVE: ImplementationStrategy.STAGED,
    RiskTolerance.MODERATE: ImplementationStrategy.GRADUAL,
    RiskTolerance.AGGRESSIVE: ImplementationStrategy.IMMEDIATE,
}

NEUTRAL_ALIGNMENT = 5.0
TECHNICAL_RISK_PER_DEPENDENCY = 15.0


def severity_for(score: float) -> RiskSeverity:
    if score < 25:
        return RiskSeverity.LOW
    if score < 50:
        return RiskSeverity.MEDIUM
    if score < 75:
        return RiskSeverity.HIGH
    return RiskSeverity.CRITICAL


def _factor(kind: RiskFactorType, score: float, description: str) -> RiskFactor:
    score = min(100.0, max(0.0, score))
    severity = severity_for(score)
    return RiskFactor(
        type=kind,
        score=score,
        weight=RISK_WEIGHTS[kind],
        severity=severity,
        description=description,
        mitigation=MITIGATIONS[kind] if severity != RiskSeverity.LOW else None,
    )


def statistical_risk(result: VariantResult) -> RiskFactor:
    """Uncertainty of the lift: interval half-width relative to the lift."""
    interval = result.improvement_interval
    if interval is None or result.improvement == 0:
        return _factor(
            RiskFactorType.STATISTICAL, 100.0, "Improvement cannot be bounded"
        )
    half_width = interval.width / 2.0
    score = 100.0 * half_width / abs(result.improvement)
    return _factor(
        RiskFactorType.STATISTICAL,
        score,
        f"Improvement interval +/-{half_width:.1%} around {result.improvement:.1%}",
    )


def implementation_risk(winner: Variant) -> RiskFactor:
    """Blast radius: traffic newly exposed to the winner at full rollout."""
    exposed = 100.0 - winner.traffic_percentage
    return _factor(
        RiskFactorType.IMPLEMENTATION,
        exposed,
        f"Rollout exposes {exposed:.0f}% more traffic to {winner.id}",
    )


def audience_risk(context: StrategicContext | None) -> RiskFactor:
    if context is None or context.concurrent_test_overlap is None:
        return _factor(
            RiskFactorType.AUDIENCE, 0.0, "No concurrent test overlap reported"
        )
    overlap = context.concurrent_test_overlap
    return _factor(
        RiskFactorType.AUDIENCE,
        overlap * 100.0,
        f"{overlap:.0%} of the audience is in other running tests",
    )


def technical_risk(context: StrategicContext | None) -> RiskFactor:
    if context is None or context.dependency_count is None:
        return _factor(RiskFactorType.TECHNICAL, 0.0, "No dependencies reported")
    count = context.dependency_count
    return _factor(
        RiskFactorType.TECHNICAL,
        count * TECHNICAL_RISK_PER_DEPENDENCY,
        f"Change touches {count} dependent system(s)",
    )


def assess_risk(
    result: VariantResult,
    winner: Variant,
    context: StrategicContext | None,
    risk_tolerance: RiskTolerance,
) -> RiskAssessment:
    """Aggregate weighted risk factors into a 0-100 score."""
    factors = [
        statistical_risk(result),
        implementation_risk(winner),
        audience_risk(context),
        technical_risk(context),
    ]
    overall = sum(f.score * f.weight for f in factors)
    return RiskAssessment(
        overall_risk_score=min(100.0, overall),
        risk_factors=factors,
        recommended_approach=APPROACH_BY_TOLERANCE[risk_tolerance],
        mitigation_strategies=[f.mitigation for f in factors if f.mitigation],
    )


def strategic_alignment(
    context: StrategicContext | None,
    tag_weights: dict[str, float],
    test_id: str | None = None,
) -> float:
    """Score 0-10 from weighted tags and business priority.

    Raises:
        MissingContextError: If neither a weighted tag nor a priority
            is available.
    """
    if context is None:
        raise MissingContextError(
            "No strategic context", test_id=test_id, field_name="context"
        )

    components: list[float] = []
    weighted = [tag_weights[t] for t in context.tags if t in tag_weights]
    if weighted:
        components.append(sum(weighted) / len(weighted))
    if context.priority is not None:
        components.append((context.priority - 1) / 4.0 * 10.0)

    if not components:
        raise MissingContextError(
            "Strategic context has no weighted tags or priority",
            test_id=test_id,
            field_name="tags",
        )
    return min(10.0, max(0.0, sum(components) / len(components)))


def business_impact(
    result: VariantResult,
    control: Variant,
    variants: list[Variant],
    context: StrategicContext | None,
    tag_weights: dict[str, float],
    test_id: str | None = None,
) -> BusinessImpact:
    """Project incremental revenue and strategic value of the winner."""
    if context is not None and context.audience_size is not None:
        audience = context.audience_size
    else:
        audience = sum(v.impressions for v in variants)

    value_per_conversion = control.revenue_per_conversion
    scale = control.conversion_rate * audience * value_per_conversion
    revenue_impact = result.improvement * scale
    if result.improvement_interval is not None:
        impact_range = (
            result.improvement_interval.lower * scale,
            result.improvement_interval.upper * scale,
        )
    else:
        impact_range = (revenue_impact, revenue_impact)

    try:
        alignment = strategic_alignment(context, tag_weights, test_id=test_id)
    except MissingContextError as e:
        logger.info(
            "Using neutral strategic alignment for test %s: %s", test_id, e.message
        )
        alignment = NEUTRAL_ALIGNMENT

    dependencies = context.dependency_count if context else None
    complexity = len(variants) + (2 if len(variants) > 2 else 0) + (dependencies or 0)

    return BusinessImpact(
        revenue_impact=revenue_impact,
        revenue_impact_range=impact_range,
        audience_reach=audience,
        strategic_alignment=alignment,
        competitive_advantage=min(10.0, max(0.0, result.improvement * 20.0)),
        operational_complexity=min(10.0, float(complexity)),
    )
