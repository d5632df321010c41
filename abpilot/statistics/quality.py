"""Data quality checks run alongside every significance analysis."""

from collections.abc import Sequence
from datetime import datetime

from scipy.stats import chi2

from abpilot.core.settings import StatisticsSettings
from abpilot.statistics.models import (
    QualityCheck,
    QualityCheckStatus,
    Variant,
    VariantResult,
)

# Observed vs configured share gap (percentage points) that warns.
ALLOCATION_DRIFT_POINTS = 5.0


def check_sample_ratio_mismatch(
    variants: Sequence[Variant], p_value_threshold: float = 0.001
) -> QualityCheck:
    """Chi-square goodness-of-fit of observed impressions vs configured split."""
    total = sum(v.impressions for v in variants)
    if total == 0:
        return QualityCheck(
            name="sample_ratio_mismatch",
            status=QualityCheckStatus.PASS,
            message="No traffic recorded yet",
        )

    split_total = sum(v.traffic_percentage for v in variants)
    statistic = 0.0
    categories = 0
    for variant in variants:
        expected = total * variant.traffic_percentage / split_total
        if expected <= 0:
            if variant.impressions > 0:
                return QualityCheck(
                    name="sample_ratio_mismatch",
                    status=QualityCheckStatus.FAIL,
                    message=(
                        f"Variant {variant.id} received traffic "
                        "but is allocated 0%"
                    ),
                    details={"variant_id": variant.id},
                )
            continue
        statistic += (variant.impressions - expected) ** 2 / expected
        categories += 1

    if categories < 2:
        p_value = 1.0
    else:
        p_value = float(chi2.sf(statistic, categories - 1))

    details = {"chi_square": statistic, "p_value": p_value}
    if p_value < p_value_threshold:
        return QualityCheck(
            name="sample_ratio_mismatch",
            status=QualityCheckStatus.FAIL,
            message=(
                f"Observed traffic split deviates from configuration "
                f"(p={p_value:.2e})"
            ),
            details=details,
        )
    return QualityCheck(
        name="sample_ratio_mismatch",
        status=QualityCheckStatus.PASS,
        message="Traffic split matches configuration",
        details=details,
    )


def check_novelty_effect(
    variants: Sequence[Variant],
    results: Sequence[VariantResult],
    now: datetime,
    window_hours: float = 24.0,
) -> QualityCheck:
    """Warn when a young test already shows a significant difference."""
    starts = [v.started_at for v in variants if v.started_at is not None]
    if not starts:
        return QualityCheck(
            name="novelty_effect",
            status=QualityCheckStatus.PASS,
            message="Test start time unknown",
        )

    age_hours = max(0.0, (now - min(starts)).total_seconds() / 3600.0)
    significant = [r.variant_id for r in results if r.is_significant]
    if age_hours < window_hours and significant:
        return QualityCheck(
            name="novelty_effect",
            status=QualityCheckStatus.WARNING,
            message=(
                f"Significant result after only {age_hours:.1f}h; "
                "early lift may fade"
            ),
            details={"age_hours": age_hours, "variants": significant},
        )
    return QualityCheck(
        name="novelty_effect",
        status=QualityCheckStatus.PASS,
        message="No novelty effect suspected",
        details={"age_hours": age_hours},
    )


def check_zero_variance(
    variants: Sequence[Variant], min_impressions: int = 100
) -> QualityCheck:
    """Fail when a well-sampled variant converts at exactly 0% or 100%."""
    flat = [
        v.id
        for v in variants
        if v.impressions >= min_impressions
        and (v.conversions == 0 or v.conversions == v.impressions)
    ]
    if flat:
        return QualityCheck(
            name="zero_variance",
            status=QualityCheckStatus.FAIL,
            message=f"Zero variance in variants: {', '.join(flat)}",
            details={"variants": flat},
        )
    return QualityCheck(
        name="zero_variance",
        status=QualityCheckStatus.PASS,
        message="All variants show variance",
    )


def check_traffic_allocation(variants: Sequence[Variant]) -> QualityCheck:
    """Warn on idle arms or observed shares drifting from the configured split."""
    total = sum(v.impressions for v in variants)
    idle = [v.id for v in variants if v.traffic_percentage <= 0]
    drift: dict[str, float] = {}
    if total > 0:
        for variant in variants:
            observed = 100.0 * variant.impressions / total
            gap = observed - variant.traffic_percentage
            if abs(gap) > ALLOCATION_DRIFT_POINTS:
                drift[variant.id] = gap

    if idle or drift:
        parts = []
        if idle:
            parts.append(f"no traffic allocated to {', '.join(idle)}")
        if drift:
            parts.append(f"allocation drift in {', '.join(drift)}")
        message = "; ".join(parts)
        return QualityCheck(
            name="traffic_allocation",
            status=QualityCheckStatus.WARNING,
            message=message[0].upper() + message[1:],
            details={"idle": idle, "drift_points": drift},
        )
    return QualityCheck(
        name="traffic_allocation",
        status=QualityCheckStatus.PASS,
        message="Traffic allocated as configured",
    )


def check_data_completeness(variants: Sequence[Variant]) -> QualityCheck:
    """Warn while any variant has no impressions."""
    missing = [v.id for v in variants if v.impressions == 0]
    if missing:
        return QualityCheck(
            name="data_completeness",
            status=QualityCheckStatus.WARNING,
            message=f"No impressions recorded for: {', '.join(missing)}",
            details={"variants": missing},
        )
    return QualityCheck(
        name="data_completeness",
        status=QualityCheckStatus.PASS,
        message="All variants have data",
    )


def run_quality_checks(
    variants: Sequence[Variant],
    results: Sequence[VariantResult],
    now: datetime,
    settings: StatisticsSettings,
) -> list[QualityCheck]:
    """Run every quality check in a fixed order."""
    return [
        check_sample_ratio_mismatch(variants, settings.srm_p_value_threshold),
        check_novelty_effect(variants, results, now, settings.novelty_window_hours),
        check_zero_variance(variants, settings.flatline_min_impressions),
        check_traffic_allocation(variants),
        check_data_completeness(variants),
    ]
