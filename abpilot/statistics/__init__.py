"""Significance analysis for A/B tests."""

from abpilot.statistics.engine import StatisticalSignificanceEngine
from abpilot.statistics.models import (
    AnalysisStatus,
    ConfidenceInterval,
    PowerAnalysis,
    QualityCheck,
    QualityCheckStatus,
    RecommendedAction,
    SampleSizeAnalysis,
    TestAnalysis,
    Variant,
    VariantResult,
)
from abpilot.statistics.strategies import (
    SignificanceTest,
    TwoProportionZTest,
    get_strategy,
    register_strategy,
)

__all__ = [
    "AnalysisStatus",
    "ConfidenceInterval",
    "PowerAnalysis",
    "QualityCheck",
    "QualityCheckStatus",
    "RecommendedAction",
    "SampleSizeAnalysis",
    "SignificanceTest",
    "StatisticalSignificanceEngine",
    "TestAnalysis",
    "TwoProportionZTest",
    "Variant",
    "VariantResult",
    "get_strategy",
    "register_strategy",
]
