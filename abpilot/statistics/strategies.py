"""Significance test strategies.

A strategy compares one treatment arm with the control and returns the
test statistic, p-value and intervals. The engine resolves strategies by
name so that alternative tests can be registered without touching it.
"""

import math
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel
from scipy.stats import norm

from abpilot.core.exceptions import ConfigurationError
from abpilot.statistics.models import ConfidenceInterval


class ProportionComparison(BaseModel):
    """Outcome of comparing a treatment proportion with the control."""

    z_score: float
    p_value: float
    improvement: float
    improvement_interval: ConfidenceInterval


def z_critical(confidence_level: float) -> float:
    """Two-tailed critical value for a confidence level."""
    return float(norm.ppf(1.0 - (1.0 - confidence_level) / 2.0))


def wilson_interval(
    conversions: int, impressions: int, confidence_level: float = 0.95
) -> ConfidenceInterval:
    """Wilson score interval for a binomial proportion.

    The bounds are clamped so the observed rate always lies inside.
    """
    if impressions <= 0:
        return ConfidenceInterval(
            lower=0.0, upper=0.0, confidence_level=confidence_level
        )

    rate = conversions / impressions
    z = z_critical(confidence_level)
    z2 = z * z
    denominator = 1.0 + z2 / impressions
    center = (rate + z2 / (2.0 * impressions)) / denominator
    margin = (
        z
        * math.sqrt(rate * (1.0 - rate) / impressions + z2 / (4.0 * impressions**2))
        / denominator
    )

    lower = max(0.0, min(rate, center - margin))
    upper = min(1.0, max(rate, center + margin))
    return ConfidenceInterval(
        lower=lower, upper=upper, confidence_level=confidence_level
    )


@runtime_checkable
class SignificanceTest(Protocol):
    """Protocol for treatment-vs-control significance tests."""

    name: str

    def compare(
        self,
        control_conversions: int,
        control_impressions: int,
        variant_conversions: int,
        variant_impressions: int,
        confidence_level: float,
    ) -> ProportionComparison:
        """Compare a treatment arm with the control.

        Args:
            control_conversions: Control conversions.
            control_impressions: Control impressions (> 0).
            variant_conversions: Treatment conversions.
            variant_impressions: Treatment impressions (> 0).
            confidence_level: Level for the improvement interval.

        Returns:
            Comparison with z-score, two-tailed p-value and lift.
        """
        ...


class TwoProportionZTest:
    """Pooled two-proportion z-test with a two-tailed p-value.

    The relative improvement interval uses the unpooled standard error of
    the rate difference scaled by the control rate.
    """

    name = "z_test"

    def compare(
        self,
        control_conversions: int,
        control_impressions: int,
        variant_conversions: int,
        variant_impressions: int,
        confidence_level: float,
    ) -> ProportionComparison:
        p1 = control_conversions / control_impressions
        p2 = variant_conversions / variant_impressions

        pooled = (control_conversions + variant_conversions) / (
            control_impressions + variant_impressions
        )
        se = math.sqrt(
            pooled
            * (1.0 - pooled)
            * (1.0 / control_impressions + 1.0 / variant_impressions)
        )
        if se == 0.0:
            z_score = 0.0
            p_value = 1.0
        else:
            z_score = (p2 - p1) / se
            p_value = float(min(1.0, 2.0 * norm.sf(abs(z_score))))

        improvement = (p2 - p1) / p1 if p1 > 0 else 0.0

        unpooled_se = math.sqrt(
            p1 * (1.0 - p1) / control_impressions
            + p2 * (1.0 - p2) / variant_impressions
        )
        if p1 > 0:
            margin = z_critical(confidence_level) * unpooled_se / p1
        else:
            margin = 0.0
        interval = ConfidenceInterval(
            lower=improvement - margin,
            upper=improvement + margin,
            confidence_level=confidence_level,
        )

        return ProportionComparison(
            z_score=z_score,
            p_value=p_value,
            improvement=improvement,
            improvement_interval=interval,
        )


_STRATEGIES: dict[str, Callable[[], SignificanceTest]] = {
    TwoProportionZTest.name: TwoProportionZTest,
}


def register_strategy(name: str, factory: Callable[[], SignificanceTest]) -> None:
    """Register a significance test under a name."""
    _STRATEGIES[name] = factory


def available_strategies() -> list[str]:
    return sorted(_STRATEGIES)


def get_strategy(name: str) -> SignificanceTest:
    """Instantiate a registered significance test.

    Raises:
        ConfigurationError: If no strategy is registered under ``name``.
    """
    factory = _STRATEGIES.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown significance strategy '{name}'. "
            f"Available: {', '.join(available_strategies())}"
        )
    return factory()


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    confidence_level: float,
    power: float,
) -> int | None:
    """Per-variant sample size for a two-proportion test.

    Returns None when the baseline is degenerate (0 or 1) or the target
    rate leaves the unit interval; callers fall back to a fixed minimum.
    """
    if baseline_rate <= 0.0 or baseline_rate >= 1.0:
        return None
    p1 = baseline_rate
    p2 = p1 * (1.0 + minimum_detectable_effect)
    if p2 >= 1.0 or p2 == p1:
        return None

    z_alpha = z_critical(confidence_level)
    z_beta = float(norm.ppf(power))
    p_bar = (p1 + p2) / 2.0
    numerator = (
        z_alpha * math.sqrt(2.0 * p_bar * (1.0 - p_bar))
        + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def achieved_power(
    control_rate: float,
    variant_rate: float,
    n_per_arm: float,
    confidence_level: float,
) -> float:
    """Two-sided power to detect the observed difference at ``n_per_arm``."""
    if n_per_arm <= 0:
        return 0.0
    diff = abs(variant_rate - control_rate)
    se = math.sqrt(
        (control_rate * (1.0 - control_rate) + variant_rate * (1.0 - variant_rate))
        / n_per_arm
    )
    if se == 0.0:
        return 0.0
    z = z_critical(confidence_level)
    power = norm.cdf(diff / se - z) + norm.cdf(-diff / se - z)
    return float(min(1.0, max(0.0, power)))
