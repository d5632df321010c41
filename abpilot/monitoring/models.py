"""Data models for test monitoring and alerts."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from abpilot.statistics.models import AnalysisStatus, QualityCheckStatus


class AlertType(str, Enum):
    """Kinds of alerts published on the alert stream."""

    SIGNIFICANCE_ACHIEVED = "significance_achieved"
    PERFORMANCE_DROP = "performance_drop"
    SAMPLE_SIZE_REACHED = "sample_size_reached"
    QUALITY_ISSUE = "quality_issue"
    EVALUATION_FAILED = "evaluation_failed"
    IMPLEMENTATION_STARTED = "implementation_started"
    PHASE_ADVANCED = "phase_advanced"
    IMPLEMENTATION_PAUSED = "implementation_paused"
    IMPLEMENTATION_COMPLETED = "implementation_completed"
    TRIGGER_BREACHED = "trigger_breached"
    ROLLBACK_TRIGGERED = "rollback_triggered"
    ROLLBACK_FAILED = "rollback_failed"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# Every AlertType has a default severity; tests assert the mapping is total.
ALERT_SEVERITIES: dict[AlertType, AlertSeverity] = {
    AlertType.SIGNIFICANCE_ACHIEVED: AlertSeverity.INFO,
    AlertType.PERFORMANCE_DROP: AlertSeverity.WARNING,
    AlertType.SAMPLE_SIZE_REACHED: AlertSeverity.INFO,
    AlertType.QUALITY_ISSUE: AlertSeverity.WARNING,
    AlertType.EVALUATION_FAILED: AlertSeverity.WARNING,
    AlertType.IMPLEMENTATION_STARTED: AlertSeverity.INFO,
    AlertType.PHASE_ADVANCED: AlertSeverity.INFO,
    AlertType.IMPLEMENTATION_PAUSED: AlertSeverity.WARNING,
    AlertType.IMPLEMENTATION_COMPLETED: AlertSeverity.INFO,
    AlertType.TRIGGER_BREACHED: AlertSeverity.WARNING,
    AlertType.ROLLBACK_TRIGGERED: AlertSeverity.CRITICAL,
    AlertType.ROLLBACK_FAILED: AlertSeverity.CRITICAL,
}


class MonitoringAlert(BaseModel):
    """A single alert about a test or its rollout."""

    id: str = Field(..., description="Unique alert identifier")
    test_id: str = Field(..., description="Test the alert refers to")
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)
    requires_manual_intervention: bool = False
    acknowledged: bool = False


class MonitoringSnapshot(BaseModel):
    """What the monitor remembers about a test between evaluations."""

    test_id: str
    taken_at: datetime
    status: AnalysisStatus
    overall_significance: float = 0.0
    progress: float = 0.0
    significant_variants: list[str] = Field(default_factory=list)
    leading_variant_id: str | None = None
    leading_rate: float = 0.0
    variant_rates: dict[str, float] = Field(default_factory=dict)
    quality: dict[str, QualityCheckStatus] = Field(default_factory=dict)
