"""Performance monitor: diffs successive analyses and raises alerts."""

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from abpilot.core.settings import MonitoringSettings
from abpilot.monitoring.alerts import AlertStream
from abpilot.monitoring.models import (
    ALERT_SEVERITIES,
    AlertSeverity,
    AlertType,
    MonitoringAlert,
    MonitoringSnapshot,
)
from abpilot.statistics.engine import StatisticalSignificanceEngine
from abpilot.statistics.models import QualityCheckStatus, TestAnalysis, Variant

logger = logging.getLogger(__name__)

_QUALITY_RANK = {
    QualityCheckStatus.PASS: 0,
    QualityCheckStatus.WARNING: 1,
    QualityCheckStatus.FAIL: 2,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PerformanceMonitor:
    """Watches tests between evaluations and publishes alerts.

    The monitor keeps one snapshot per test in memory. Each observation
    is compared with the previous snapshot; alerts of the same type for
    the same test are suppressed within the cool-down window.
    """

    def __init__(
        self,
        engine: StatisticalSignificanceEngine | None = None,
        stream: AlertStream | None = None,
        settings: MonitoringSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or MonitoringSettings()
        self.engine = engine or StatisticalSignificanceEngine()
        self.stream = stream or AlertStream(max_history=self.settings.max_alert_history)
        self._clock = clock or _utcnow
        self._snapshots: dict[str, MonitoringSnapshot] = {}
        self._last_emitted: dict[tuple[str, AlertType], datetime] = {}

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.settings.alert_cooldown_minutes)

    def get_snapshot(self, test_id: str) -> MonitoringSnapshot | None:
        return self._snapshots.get(test_id)

    def reset(self, test_id: str) -> None:
        """Forget the snapshot and cool-down state for a test."""
        self._snapshots.pop(test_id, None)
        for key in [k for k in self._last_emitted if k[0] == test_id]:
            del self._last_emitted[key]

    def raise_alert(
        self,
        test_id: str,
        alert_type: AlertType,
        message: str,
        data: dict[str, Any] | None = None,
        severity: AlertSeverity | None = None,
        requires_manual_intervention: bool = False,
        deduplicate: bool = True,
        now: datetime | None = None,
    ) -> MonitoringAlert | None:
        """Build and publish an alert.

        Args:
            test_id: Test the alert refers to.
            alert_type: Alert type; also selects the default severity.
            message: Human-readable message.
            data: Structured payload.
            severity: Override for the type's default severity.
            requires_manual_intervention: Flag for operator action.
            deduplicate: Suppress if the same type fired for this test
                within the cool-down window.
            now: Alert time. Defaults to the monitor clock.

        Returns:
            The published alert, or None if it was suppressed.
        """
        now = now or self._clock()
        key = (test_id, alert_type)
        if deduplicate:
            last = self._last_emitted.get(key)
            if last is not None and now - last < self.cooldown:
                logger.debug(
                    "Suppressed duplicate %s alert for test %s",
                    alert_type.value,
                    test_id,
                )
                return None

        alert = MonitoringAlert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            test_id=test_id,
            type=alert_type,
            severity=severity or ALERT_SEVERITIES[alert_type],
            message=message,
            timestamp=now,
            data=data or {},
            requires_manual_intervention=requires_manual_intervention,
        )
        self._last_emitted[key] = now
        self.stream.publish(alert)
        return alert

    def _snapshot(self, analysis: TestAnalysis, now: datetime) -> MonitoringSnapshot:
        leading = analysis.leading_result()
        return MonitoringSnapshot(
            test_id=analysis.test_id,
            taken_at=now,
            status=analysis.status,
            overall_significance=analysis.overall_significance,
            progress=analysis.sample_size_analysis.progress,
            significant_variants=[
                r.variant_id for r in analysis.results if r.is_significant
            ],
            leading_variant_id=leading.variant_id if leading else None,
            leading_rate=leading.conversion_rate if leading else 0.0,
            variant_rates={r.variant_id: r.conversion_rate for r in analysis.results},
            quality={c.name: c.status for c in analysis.quality_checks},
        )

    def observe(
        self, analysis: TestAnalysis, now: datetime | None = None
    ) -> list[MonitoringAlert]:
        """Diff an analysis against the previous snapshot and alert.

        Returns:
            Alerts published by this observation (after deduplication).
        """
        now = now or self._clock()
        test_id = analysis.test_id
        previous = self._snapshots.get(test_id)
        current = self._snapshot(analysis, now)
        alerts: list[MonitoringAlert | None] = []

        newly_significant = [
            v
            for v in current.significant_variants
            if previous is None or v not in previous.significant_variants
        ]
        if newly_significant:
            alerts.append(
                self.raise_alert(
                    test_id,
                    AlertType.SIGNIFICANCE_ACHIEVED,
                    f"Significance reached for {', '.join(newly_significant)} "
                    f"({analysis.overall_significance:.1%})",
                    data={
                        "variants": newly_significant,
                        "overall_significance": analysis.overall_significance,
                    },
                    now=now,
                )
            )

        if previous is not None and previous.leading_variant_id is not None:
            tracked = previous.leading_variant_id
            before = previous.leading_rate
            after = current.variant_rates.get(tracked)
            if after is not None and before > 0:
                drop = (before - after) / before
                if drop > self.settings.performance_drop_threshold:
                    alerts.append(
                        self.raise_alert(
                            test_id,
                            AlertType.PERFORMANCE_DROP,
                            f"Conversion rate of {tracked} dropped {drop:.1%}",
                            data={
                                "variant_id": tracked,
                                "previous_rate": before,
                                "current_rate": after,
                                "drop": drop,
                            },
                            now=now,
                        )
                    )

        previous_progress = previous.progress if previous else 0.0
        if current.progress >= 1.0 and previous_progress < 1.0:
            alerts.append(
                self.raise_alert(
                    test_id,
                    AlertType.SAMPLE_SIZE_REACHED,
                    f"Required sample size of "
                    f"{analysis.sample_size_analysis.required} reached",
                    data={
                        "current": analysis.sample_size_analysis.current,
                        "required": analysis.sample_size_analysis.required,
                    },
                    now=now,
                )
            )

        for check in analysis.quality_checks:
            before_status = (
                previous.quality.get(check.name, QualityCheckStatus.PASS)
                if previous
                else QualityCheckStatus.PASS
            )
            if _QUALITY_RANK[check.status] > _QUALITY_RANK[before_status]:
                alerts.append(
                    self.raise_alert(
                        test_id,
                        AlertType.QUALITY_ISSUE,
                        f"Quality check {check.name}: {check.message}",
                        data={
                            "check": check.name,
                            "status": check.status.value,
                            "previous_status": before_status.value,
                            **check.details,
                        },
                        now=now,
                    )
                )

        self._snapshots[test_id] = current
        return [a for a in alerts if a is not None]

    def monitor_test(
        self,
        test_id: str,
        variants: Sequence[Variant],
        now: datetime | None = None,
    ) -> list[MonitoringAlert]:
        """Analyze a test and alert on changes since the last call."""
        analysis = self.engine.analyze_test(test_id, variants, now=now)
        return self.observe(analysis, now=now)
