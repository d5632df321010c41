"""Winner selection, risk assessment and rollout planning."""

from abpilot.conclusion.engine import TestConclusionEngine
from abpilot.conclusion.models import (
    BusinessImpact,
    ImplementationPhase,
    ImplementationPlan,
    ImplementationStrategy,
    RiskAssessment,
    RiskFactor,
    RiskTolerance,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
    RollbackTrigger,
    SelectionCriteria,
    StrategicContext,
    TestConclusion,
    WinnerSelection,
)

__all__ = [
    "BusinessImpact",
    "ImplementationPhase",
    "ImplementationPlan",
    "ImplementationStrategy",
    "RiskAssessment",
    "RiskFactor",
    "RiskTolerance",
    "RollbackAction",
    "RollbackPlan",
    "RollbackStep",
    "RollbackTrigger",
    "SelectionCriteria",
    "StrategicContext",
    "TestConclusion",
    "TestConclusionEngine",
    "WinnerSelection",
]
