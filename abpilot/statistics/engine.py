"""Statistical significance engine.

Turns raw per-variant counters into a ``TestAnalysis``: per-variant
comparisons with the control, sample size and power analysis, data
quality checks, a status and a recommended action.

Example:
    engine = StatisticalSignificanceEngine()
    analysis = engine.analyze_test("checkout-cta", variants)
    if analysis.recommended_action == RecommendedAction.STOP:
        ...
"""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from abpilot.core.exceptions import InvalidInputError
from abpilot.core.settings import StatisticsSettings
from abpilot.statistics.models import (
    AnalysisStatus,
    PowerAnalysis,
    QualityCheckStatus,
    RecommendedAction,
    SampleSizeAnalysis,
    TestAnalysis,
    Variant,
    VariantResult,
)
from abpilot.statistics.quality import run_quality_checks
from abpilot.statistics.strategies import (
    SignificanceTest,
    achieved_power,
    get_strategy,
    required_sample_size,
    wilson_interval,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StatisticalSignificanceEngine:
    """Computes significance, power and data quality for one test.

    The engine is stateless between calls; every analysis is recomputed
    from the counters passed in.
    """

    def __init__(
        self,
        settings: StatisticsSettings | None = None,
        strategy: SignificanceTest | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Statistics settings. Uses defaults if not provided.
            strategy: Significance test. Resolved from ``settings.strategy``
                if not provided.
            clock: Source of the current time when ``now`` is omitted.
        """
        self.settings = settings or StatisticsSettings()
        self.strategy = strategy or get_strategy(self.settings.strategy)
        self._clock = clock or _utcnow

    @property
    def alpha(self) -> float:
        return 1.0 - self.settings.confidence_level

    def validate_variants(
        self, test_id: str, variants: Sequence[Variant]
    ) -> tuple[Variant, list[Variant]]:
        """Check counters and traffic split.

        Returns:
            Tuple of (control, treatments).

        Raises:
            InvalidInputError: If any counter or the split is malformed.
        """
        if len(variants) < 2:
            raise InvalidInputError(
                "A test needs a control and at least one treatment",
                test_id=test_id,
            )

        seen: set[str] = set()
        for variant in variants:
            if variant.id in seen:
                raise InvalidInputError(
                    "Duplicate variant id", test_id=test_id, variant_id=variant.id
                )
            seen.add(variant.id)
            if variant.impressions < 0 or variant.conversions < 0:
                raise InvalidInputError(
                    "Counters must be non-negative",
                    test_id=test_id,
                    variant_id=variant.id,
                )
            if variant.revenue < 0:
                raise InvalidInputError(
                    "Revenue must be non-negative",
                    test_id=test_id,
                    variant_id=variant.id,
                )
            if variant.conversions > variant.impressions:
                raise InvalidInputError(
                    f"Conversions ({variant.conversions}) exceed "
                    f"impressions ({variant.impressions})",
                    test_id=test_id,
                    variant_id=variant.id,
                )
            if not 0.0 <= variant.traffic_percentage <= 100.0:
                raise InvalidInputError(
                    f"Traffic percentage {variant.traffic_percentage} "
                    "is outside 0-100",
                    test_id=test_id,
                    variant_id=variant.id,
                )

        controls = [v for v in variants if v.is_control]
        if len(controls) != 1:
            raise InvalidInputError(
                f"Expected exactly one control variant, found {len(controls)}",
                test_id=test_id,
            )

        split = sum(v.traffic_percentage for v in variants)
        if abs(split - 100.0) > self.settings.traffic_tolerance:
            raise InvalidInputError(
                f"Traffic split sums to {split:.2f}%, expected 100%",
                test_id=test_id,
            )

        treatments = [v for v in variants if not v.is_control]
        return controls[0], treatments

    def _control_result(self, control: Variant) -> VariantResult:
        return VariantResult(
            variant_id=control.id,
            variant_name=control.name,
            is_control=True,
            impressions=control.impressions,
            conversions=control.conversions,
            conversion_rate=control.conversion_rate,
            confidence_interval=wilson_interval(
                control.conversions,
                control.impressions,
                self.settings.confidence_level,
            ),
        )

    def _treatment_result(self, control: Variant, variant: Variant) -> VariantResult:
        interval = wilson_interval(
            variant.conversions, variant.impressions, self.settings.confidence_level
        )
        if control.impressions == 0 or variant.impressions == 0:
            return VariantResult(
                variant_id=variant.id,
                variant_name=variant.name,
                impressions=variant.impressions,
                conversions=variant.conversions,
                conversion_rate=variant.conversion_rate,
                confidence_interval=interval,
            )

        comparison = self.strategy.compare(
            control.conversions,
            control.impressions,
            variant.conversions,
            variant.impressions,
            self.settings.confidence_level,
        )
        enough_visitors = (
            control.impressions + variant.impressions
            >= self.settings.minimum_sample_size
        )
        return VariantResult(
            variant_id=variant.id,
            variant_name=variant.name,
            impressions=variant.impressions,
            conversions=variant.conversions,
            conversion_rate=variant.conversion_rate,
            confidence_interval=interval,
            p_value=comparison.p_value,
            z_score=comparison.z_score,
            improvement=comparison.improvement,
            improvement_interval=comparison.improvement_interval,
            is_significant=comparison.p_value < self.alpha and enough_visitors,
        )

    def _sample_size(
        self, control: Variant, variants: Sequence[Variant]
    ) -> SampleSizeAnalysis:
        current = sum(v.impressions for v in variants)
        per_variant = required_sample_size(
            control.conversion_rate,
            self.settings.minimum_detectable_effect,
            self.settings.confidence_level,
            self.settings.power,
        )
        if per_variant is None:
            required = self.settings.minimum_sample_size
        else:
            required = max(
                per_variant * len(variants), self.settings.minimum_sample_size
            )
        progress = 1.0 if required == 0 else min(1.0, current / required)
        return SampleSizeAnalysis(current=current, required=required, progress=progress)

    def _power(
        self,
        control: VariantResult,
        leading: VariantResult | None,
        variant_count: int,
        current: int,
    ) -> PowerAnalysis:
        current_power = 0.0
        if leading is not None and leading.impressions > 0 and control.impressions > 0:
            current_power = achieved_power(
                control.conversion_rate,
                leading.conversion_rate,
                current / variant_count,
                self.settings.confidence_level,
            )
        return PowerAnalysis(
            current_power=current_power,
            target_power=self.settings.power,
            minimum_detectable_effect=self.settings.minimum_detectable_effect,
        )

    def _time_to_significance(
        self,
        variants: Sequence[Variant],
        sample_size: SampleSizeAnalysis,
        now: datetime,
    ) -> float | None:
        if sample_size.progress >= 1.0:
            return 0.0
        starts = [v.started_at for v in variants if v.started_at is not None]
        if not starts or sample_size.current == 0:
            return None
        age_hours = (now - min(starts)).total_seconds() / 3600.0
        if age_hours <= 0:
            return None
        hourly = sample_size.current / age_hours
        return (sample_size.required - sample_size.current) / hourly

    def analyze_test(
        self,
        test_id: str,
        variants: Sequence[Variant],
        now: datetime | None = None,
    ) -> TestAnalysis:
        """Analyze a test's variants against its control.

        Args:
            test_id: Test identifier.
            variants: All variants, exactly one flagged as control.
            now: Analysis time. Defaults to the engine clock.

        Returns:
            Fresh analysis. Zero-impression variants yield
            ``AnalysisStatus.INSUFFICIENT_DATA`` rather than an error.

        Raises:
            InvalidInputError: If the counters or split are malformed.
        """
        now = now or self._clock()
        control, treatments = self.validate_variants(test_id, variants)

        control_result = self._control_result(control)
        treatment_results = [self._treatment_result(control, v) for v in treatments]
        results = [control_result, *treatment_results]

        overall_significance = max(r.confidence for r in treatment_results)
        sample_size = self._sample_size(control, variants)
        leading = max(treatment_results, key=lambda r: r.conversion_rate)
        power = self._power(control_result, leading, len(variants), sample_size.current)
        checks = run_quality_checks(variants, results, now, self.settings)

        significant = [r for r in treatment_results if r.is_significant]
        winners = [r for r in significant if r.improvement > 0]
        winner = max(winners, key=lambda r: r.conversion_rate) if winners else None
        failed = any(c.status == QualityCheckStatus.FAIL for c in checks)

        if any(v.impressions == 0 for v in variants):
            status = AnalysisStatus.INSUFFICIENT_DATA
        elif failed:
            status = AnalysisStatus.INCONCLUSIVE
        elif significant:
            status = AnalysisStatus.SIGNIFICANT
        elif sample_size.progress >= 1.0:
            status = AnalysisStatus.INCONCLUSIVE
        else:
            status = AnalysisStatus.RUNNING

        if failed:
            action = RecommendedAction.INVESTIGATE
        elif (
            winner is not None
            and winner.improvement >= self.settings.minimum_improvement
        ):
            action = RecommendedAction.STOP
        elif (
            power.current_power < power.target_power
            and overall_significance >= self.settings.trend_confidence
        ):
            action = RecommendedAction.EXTEND
        else:
            action = RecommendedAction.CONTINUE

        analysis = TestAnalysis(
            test_id=test_id,
            analyzed_at=now,
            results=results,
            overall_significance=overall_significance,
            sample_size_analysis=sample_size,
            power_analysis=power,
            quality_checks=checks,
            recommended_action=action,
            winning_variant=winner.variant_id if winner else None,
            status=status,
            time_to_significance_hours=self._time_to_significance(
                variants, sample_size, now
            ),
        )
        logger.debug(
            "Analyzed test %s: status=%s action=%s significance=%.4f",
            test_id,
            status.value,
            action.value,
            overall_significance,
        )
        return analysis
