"""Tests for data quality checks."""

from datetime import timedelta

import pytest

from abpilot.core.settings import StatisticsSettings
from abpilot.statistics.models import (
    ConfidenceInterval,
    QualityCheckStatus,
    VariantResult,
)
from abpilot.statistics.quality import (
    check_data_completeness,
    check_novelty_effect,
    check_sample_ratio_mismatch,
    check_traffic_allocation,
    check_zero_variance,
    run_quality_checks,
)
from tests.factories import NOW, make_variant


def _significant(variant_id: str) -> VariantResult:
    return VariantResult(
        variant_id=variant_id,
        impressions=5000,
        conversions=600,
        conversion_rate=0.12,
        confidence_interval=ConfidenceInterval(lower=0.11, upper=0.13),
        p_value=0.001,
        is_significant=True,
    )


class TestSampleRatioMismatch:
    def test_balanced_split_passes(self) -> None:
        variants = [
            make_variant("control", 5000, 500, is_control=True),
            make_variant("b", 5050, 500),
        ]
        check = check_sample_ratio_mismatch(variants)
        assert check.status == QualityCheckStatus.PASS
        assert check.details["p_value"] > 0.001

    def test_skewed_split_fails(self) -> None:
        variants = [
            make_variant("control", 6000, 600, is_control=True),
            make_variant("b", 4000, 400),
        ]
        check = check_sample_ratio_mismatch(variants)
        assert check.status == QualityCheckStatus.FAIL
        assert check.details["chi_square"] > 100

    def test_uneven_configured_split(self) -> None:
        variants = [
            make_variant("control", 9000, 900, is_control=True, traffic_percentage=90),
            make_variant("b", 1000, 100, traffic_percentage=10),
        ]
        assert check_sample_ratio_mismatch(variants).status == QualityCheckStatus.PASS

    def test_traffic_to_unallocated_arm_fails(self) -> None:
        variants = [
            make_variant("control", 1000, 100, is_control=True, traffic_percentage=100),
            make_variant("b", 10, 1, traffic_percentage=0),
        ]
        check = check_sample_ratio_mismatch(variants)
        assert check.status == QualityCheckStatus.FAIL
        assert check.details["variant_id"] == "b"

    def test_no_traffic_passes(self) -> None:
        variants = [
            make_variant("control", 0, 0, is_control=True),
            make_variant("b", 0, 0),
        ]
        assert check_sample_ratio_mismatch(variants).status == QualityCheckStatus.PASS


class TestNoveltyEffect:
    def test_young_significant_test_warns(self) -> None:
        started = NOW - timedelta(hours=6)
        variants = [
            make_variant("control", 5000, 500, is_control=True, started_at=started),
            make_variant("b", 5000, 600, started_at=started),
        ]
        check = check_novelty_effect(variants, [_significant("b")], NOW)
        assert check.status == QualityCheckStatus.WARNING
        assert check.details["variants"] == ["b"]
        assert check.details["age_hours"] == pytest.approx(6.0)

    def test_mature_test_passes(self) -> None:
        started = NOW - timedelta(days=3)
        variants = [
            make_variant("control", 5000, 500, is_control=True, started_at=started),
            make_variant("b", 5000, 600, started_at=started),
        ]
        check = check_novelty_effect(variants, [_significant("b")], NOW)
        assert check.status == QualityCheckStatus.PASS

    def test_unknown_start_passes(self) -> None:
        variants = [
            make_variant("control", 5000, 500, is_control=True),
            make_variant("b", 5000, 600),
        ]
        check = check_novelty_effect(variants, [_significant("b")], NOW)
        assert check.status == QualityCheckStatus.PASS


class TestZeroVariance:
    def test_flat_rate_fails(self) -> None:
        variants = [
            make_variant("control", 500, 0, is_control=True),
            make_variant("b", 500, 500),
        ]
        check = check_zero_variance(variants)
        assert check.status == QualityCheckStatus.FAIL
        assert check.details["variants"] == ["control", "b"]

    def test_small_samples_ignored(self) -> None:
        variants = [
            make_variant("control", 20, 0, is_control=True),
            make_variant("b", 20, 1),
        ]
        assert check_zero_variance(variants).status == QualityCheckStatus.PASS


class TestTrafficAllocation:
    def test_drift_warns(self) -> None:
        variants = [
            make_variant("control", 6000, 600, is_control=True),
            make_variant("b", 4000, 400),
        ]
        check = check_traffic_allocation(variants)
        assert check.status == QualityCheckStatus.WARNING
        assert check.details["drift_points"]["control"] == pytest.approx(10.0)
        assert check.message.startswith("Allocation drift")

    def test_idle_arm_warns(self) -> None:
        variants = [
            make_variant("control", 100, 10, is_control=True, traffic_percentage=100),
            make_variant("b", 0, 0, traffic_percentage=0),
        ]
        check = check_traffic_allocation(variants)
        assert check.status == QualityCheckStatus.WARNING
        assert check.details["idle"] == ["b"]
        assert check.message.startswith("No traffic allocated to b")

    def test_on_target_passes(self) -> None:
        variants = [
            make_variant("control", 5000, 500, is_control=True),
            make_variant("b", 5100, 510),
        ]
        assert check_traffic_allocation(variants).status == QualityCheckStatus.PASS


class TestDataCompleteness:
    def test_missing_variant_warns(self) -> None:
        variants = [
            make_variant("control", 100, 10, is_control=True),
            make_variant("b", 0, 0),
        ]
        check = check_data_completeness(variants)
        assert check.status == QualityCheckStatus.WARNING
        assert check.details["variants"] == ["b"]


def test_run_quality_checks_order(example_variants) -> None:
    checks = run_quality_checks(example_variants, [], NOW, StatisticsSettings())
    assert [c.name for c in checks] == [
        "sample_ratio_mismatch",
        "novelty_effect",
        "zero_variance",
        "traffic_allocation",
        "data_completeness",
    ]
    assert all(c.status == QualityCheckStatus.PASS for c in checks)
