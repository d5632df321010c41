"""Data models for significance analysis of A/B tests."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class AnalysisStatus(str, Enum):
    """Overall state of a test analysis."""

    INSUFFICIENT_DATA = "insufficient_data"
    RUNNING = "running"
    SIGNIFICANT = "significant"
    INCONCLUSIVE = "inconclusive"


class RecommendedAction(str, Enum):
    """What the operator (or scheduler) should do with the test."""

    STOP = "stop"
    CONTINUE = "continue"
    EXTEND = "extend"
    INVESTIGATE = "investigate"


class QualityCheckStatus(str, Enum):
    """Outcome of a single data quality check."""

    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class Variant(BaseModel):
    """One arm of an experiment with its raw counters.

    Counters are validated by the engine rather than the model so that
    malformed analytics input surfaces as ``InvalidInputError``.
    """

    id: str = Field(..., description="Variant identifier")
    name: str = Field(default="", description="Display name")
    is_control: bool = Field(default=False, description="Baseline arm")
    traffic_percentage: float = Field(
        ..., description="Configured share of traffic (0-100)"
    )
    impressions: int = Field(default=0, description="Visitors exposed")
    conversions: int = Field(default=0, description="Visitors that converted")
    revenue: float = Field(default=0.0, description="Revenue attributed")
    started_at: datetime | None = Field(
        default=None, description="When the variant began receiving traffic"
    )

    @property
    def conversion_rate(self) -> float:
        """Conversion rate as a ratio; 0 without impressions."""
        if self.impressions <= 0:
            return 0.0
        return self.conversions / self.impressions

    @property
    def revenue_per_conversion(self) -> float:
        if self.conversions <= 0:
            return 0.0
        return self.revenue / self.conversions


class ConfidenceInterval(BaseModel):
    """Two-sided interval at a given confidence level."""

    lower: float
    upper: float
    confidence_level: float = Field(default=0.95, gt=0.0, lt=1.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ConfidenceInterval":
        if self.lower > self.upper:
            raise ValueError(
                f"Interval lower bound {self.lower} exceeds upper bound {self.upper}"
            )
        return self

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def contains(self, value: float) -> bool:
        return self.lower <= value <= self.upper


class VariantResult(BaseModel):
    """Per-variant comparison against the control.

    The control's own result carries ``p_value=1`` and zero improvement.
    """

    variant_id: str
    variant_name: str = ""
    is_control: bool = False
    impressions: int = Field(..., ge=0)
    conversions: int = Field(..., ge=0)
    conversion_rate: float = Field(..., ge=0.0, le=1.0)
    confidence_interval: ConfidenceInterval
    p_value: float = Field(default=1.0, ge=0.0, le=1.0)
    z_score: float = 0.0
    improvement: float = Field(
        default=0.0, description="Relative lift over the control rate"
    )
    improvement_interval: ConfidenceInterval | None = None
    is_significant: bool = False

    @property
    def confidence(self) -> float:
        """Confidence in the difference, ``1 - p_value``."""
        return 1.0 - self.p_value


class SampleSizeAnalysis(BaseModel):
    """Progress toward the sample needed to detect the configured MDE."""

    current: int = Field(..., ge=0, description="Impressions across all variants")
    required: int = Field(..., ge=0, description="Impressions needed in total")
    progress: float = Field(..., ge=0.0, le=1.0)


class PowerAnalysis(BaseModel):
    """Achieved power for the observed effect at the current sample."""

    current_power: float = Field(..., ge=0.0, le=1.0)
    target_power: float = Field(..., gt=0.0, lt=1.0)
    minimum_detectable_effect: float = Field(..., gt=0.0)


class QualityCheck(BaseModel):
    """Result of one data quality check."""

    name: str
    status: QualityCheckStatus
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class TestAnalysis(BaseModel):
    """Complete significance analysis of a test at one point in time."""

    __test__ = False

    test_id: str
    analyzed_at: datetime
    results: list[VariantResult] = Field(default_factory=list)
    overall_significance: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_size_analysis: SampleSizeAnalysis
    power_analysis: PowerAnalysis
    quality_checks: list[QualityCheck] = Field(default_factory=list)
    recommended_action: RecommendedAction = RecommendedAction.CONTINUE
    winning_variant: str | None = None
    status: AnalysisStatus = AnalysisStatus.RUNNING
    time_to_significance_hours: float | None = Field(
        default=None,
        description="Estimated hours until the required sample is reached",
    )

    @property
    def control_result(self) -> VariantResult | None:
        for result in self.results:
            if result.is_control:
                return result
        return None

    @property
    def treatment_results(self) -> list[VariantResult]:
        return [r for r in self.results if not r.is_control]

    @property
    def has_failed_checks(self) -> bool:
        return any(c.status == QualityCheckStatus.FAIL for c in self.quality_checks)

    def get_result(self, variant_id: str) -> VariantResult | None:
        """Find the result for a variant by id."""
        for result in self.results:
            if result.variant_id == variant_id:
                return result
        return None

    def get_check(self, name: str) -> QualityCheck | None:
        for check in self.quality_checks:
            if check.name == name:
                return check
        return None

    def leading_result(self) -> VariantResult | None:
        """Treatment with the highest conversion rate, if any."""
        treatments = self.treatment_results
        if not treatments:
            return None
        return max(treatments, key=lambda r: r.conversion_rate)
