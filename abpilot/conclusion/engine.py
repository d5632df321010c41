"""Test conclusion engine.

Decides whether a test has a shippable winner and, if so, produces the
business impact, risk assessment, implementation plan and rollback plan.
The engine is a pure function of its inputs and configuration: the
conclusion time comes from ``now`` (or the analysis time) and no random
identifiers are generated.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from abpilot.conclusion.models import (
    SelectionCriteria,
    StrategicContext,
    TestConclusion,
    WinnerSelection,
)
from abpilot.conclusion.planning import (
    build_implementation_plan,
    build_rollback_plan,
    choose_strategy,
)
from abpilot.conclusion.risk import assess_risk, business_impact
from abpilot.core.settings import RolloutSettings
from abpilot.statistics.engine import StatisticalSignificanceEngine
from abpilot.statistics.models import (
    RecommendedAction,
    TestAnalysis,
    Variant,
    VariantResult,
)

logger = logging.getLogger(__name__)

EARLY_WINNER_CONFIDENCE = 0.99
EARLY_WINNER_IMPROVEMENT = 0.20


class TestConclusionEngine:
    """Turns a significance analysis into a rollout decision."""

    __test__ = False

    def __init__(
        self,
        engine: StatisticalSignificanceEngine | None = None,
        criteria: SelectionCriteria | None = None,
        rollout_settings: RolloutSettings | None = None,
        tag_weights: dict[str, float] | None = None,
    ) -> None:
        """Initialize the conclusion engine.

        Args:
            engine: Significance engine used when variants are passed in.
            criteria: Winner thresholds (ratios) and risk tolerance.
            rollout_settings: Phase sizing and rollback trigger settings.
            tag_weights: Strategic weight (0-10) per test tag.
        """
        self.engine = engine or StatisticalSignificanceEngine()
        self.criteria = criteria or SelectionCriteria()
        self.rollout_settings = rollout_settings or RolloutSettings()
        self.tag_weights = dict(tag_weights or {})

    def _candidates(self, analysis: TestAnalysis) -> list[VariantResult]:
        return [
            r
            for r in analysis.treatment_results
            if r.is_significant
            and r.confidence >= self.criteria.minimum_confidence
            and r.improvement >= self.criteria.minimum_improvement
        ]

    def _triggered_rules(
        self, analysis: TestAnalysis, winner: VariantResult
    ) -> list[str]:
        rules = ["significance_achieved"]
        if (
            winner.confidence >= EARLY_WINNER_CONFIDENCE
            and winner.improvement >= EARLY_WINNER_IMPROVEMENT
        ):
            rules.append("early_winner")
        if analysis.sample_size_analysis.progress >= 1.0:
            rules.append("sample_size_reached")
        return rules

    def evaluate_analysis(
        self,
        analysis: TestAnalysis,
        variants: Sequence[Variant],
        context: StrategicContext | None = None,
        now: datetime | None = None,
    ) -> TestConclusion | None:
        """Decide on an existing analysis.

        Returns:
            A conclusion, or None if the test should keep running.
        """
        if analysis.recommended_action != RecommendedAction.STOP:
            return None

        candidates = self._candidates(analysis)
        if not candidates:
            logger.debug(
                "Test %s stopped but no variant meets the selection criteria",
                analysis.test_id,
            )
            return None

        winner_result = max(candidates, key=lambda r: r.conversion_rate)
        by_id = {v.id: v for v in variants}
        winner = by_id[winner_result.variant_id]
        control = next(v for v in variants if v.is_control)

        risk = assess_risk(
            winner_result, winner, context, self.criteria.risk_tolerance
        )
        strategy = choose_strategy(
            risk.overall_risk_score, self.criteria.risk_tolerance
        )
        impact = business_impact(
            winner_result,
            control,
            list(variants),
            context,
            self.tag_weights,
            test_id=analysis.test_id,
        )
        revenue_per_visitor = (
            winner.revenue / winner.impressions if winner.impressions else 0.0
        )
        plan = build_implementation_plan(
            strategy,
            control.conversion_rate,
            winner_result.improvement,
            revenue_per_visitor,
            self.rollout_settings,
            self.engine.settings,
        )
        rollback = build_rollback_plan(
            control.id, risk.overall_risk_score, self.rollout_settings
        )

        name = winner.name or winner.id
        selection = WinnerSelection(
            variant_id=winner.id,
            variant_name=winner.name,
            selection_reason=(
                f"{name} converts at {winner_result.conversion_rate:.2%} vs "
                f"{control.conversion_rate:.2%} for control "
                f"({winner_result.improvement:+.1%}, "
                f"{winner_result.confidence:.1%} confidence); highest rate of "
                f"{len(candidates)} qualifying variant(s)"
            ),
            confidence=winner_result.confidence,
            expected_improvement=winner_result.improvement,
            implementation_strategy=strategy,
        )
        rules = self._triggered_rules(analysis, winner_result)

        conclusion = TestConclusion(
            test_id=analysis.test_id,
            conclusion_time=now or analysis.analyzed_at,
            conclusion_reason=(
                f"Concluded on {rules[0]}: {name} beat control with "
                f"{winner_result.confidence:.1%} confidence"
            ),
            triggered_rules=rules,
            selected_winner=selection,
            confidence=winner_result.confidence,
            business_impact=impact,
            risk_assessment=risk,
            implementation_plan=plan,
            rollback_plan=rollback,
            control_variant_id=control.id,
        )
        logger.info(
            "Test %s concluded: winner=%s strategy=%s risk=%.1f",
            analysis.test_id,
            winner.id,
            strategy.value,
            risk.overall_risk_score,
        )
        return conclusion

    def evaluate_test_conclusion(
        self,
        test_id: str,
        variants: Sequence[Variant],
        context: StrategicContext | None = None,
        now: datetime | None = None,
    ) -> TestConclusion | None:
        """Analyze a test and decide whether to ship a winner.

        Raises:
            InvalidInputError: If the variant counters are malformed.
        """
        analysis = self.engine.analyze_test(test_id, variants, now=now)
        return self.evaluate_analysis(analysis, variants, context=context, now=now)
