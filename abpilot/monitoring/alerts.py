"""Alert stream with subscriptions and a bounded history.

Publishers hand finished ``MonitoringAlert`` objects to the stream; the
stream keeps them for read models and forwards them to subscribers whose
filter matches. Unacknowledged critical alerts are also held outside the
bounded history until they are acknowledged or cleared.
"""

import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from abpilot.core.metrics import get_metrics
from abpilot.monitoring.models import AlertSeverity, AlertType, MonitoringAlert

logger = logging.getLogger(__name__)

AlertCallback = Callable[[MonitoringAlert], None]


@dataclass
class Subscription:
    """A subscriber callback with an optional filter."""

    id: str
    callback: AlertCallback
    test_id: str | None = None
    types: frozenset[AlertType] = frozenset()
    min_severity: AlertSeverity | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def matches(self, alert: MonitoringAlert) -> bool:
        """Check if an alert passes this subscription's filter."""
        if self.test_id is not None and alert.test_id != self.test_id:
            return False
        if self.types and alert.type not in self.types:
            return False
        if self.min_severity is not None:
            order = list(AlertSeverity)
            if order.index(alert.severity) < order.index(self.min_severity):
                return False
        return True


class AlertStream:
    """Publishes alerts to subscribers and keeps recent history."""

    def __init__(self, max_history: int = 1000) -> None:
        """Initialize the stream.

        Args:
            max_history: Maximum alerts kept in memory; oldest drop first.
        """
        self._history: deque[MonitoringAlert] = deque(maxlen=max_history)
        # test_id -> alert id -> alert; never trimmed
        self._open_critical: dict[str, dict[str, MonitoringAlert]] = {}
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        callback: AlertCallback,
        test_id: str | None = None,
        types: Iterable[AlertType] | None = None,
        min_severity: AlertSeverity | None = None,
    ) -> str:
        """Register a callback for matching alerts.

        Returns:
            Subscription id for ``unsubscribe``.
        """
        subscription_id = uuid.uuid4().hex
        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            callback=callback,
            test_id=test_id,
            types=frozenset(types or ()),
            min_severity=min_severity,
        )
        logger.debug("Alert subscription %s registered", subscription_id)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, alert: MonitoringAlert) -> int:
        """Store an alert and deliver it to matching subscribers.

        A failing subscriber is logged and does not stop delivery to
        the others.

        Returns:
            Number of subscribers the alert was delivered to.
        """
        self._history.append(alert)
        if alert.severity == AlertSeverity.CRITICAL and not alert.acknowledged:
            self._open_critical.setdefault(alert.test_id, {})[alert.id] = alert

        metrics = get_metrics()
        if metrics:
            metrics.record_alert(alert.type.value, alert.severity.value)

        log_level = (
            logging.WARNING
            if alert.severity == AlertSeverity.CRITICAL
            else logging.INFO
        )
        logger.log(
            log_level,
            "Alert %s for test %s: %s",
            alert.type.value,
            alert.test_id,
            alert.message,
        )

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(alert):
                continue
            try:
                subscription.callback(alert)
            except Exception:
                logger.exception(
                    "Alert subscriber %s failed on alert %s",
                    subscription.id,
                    alert.id,
                )
                continue
            delivered += 1
        return delivered

    def get_alerts(
        self,
        test_id: str | None = None,
        alert_type: AlertType | None = None,
        severity: AlertSeverity | None = None,
        unacknowledged_only: bool = False,
        limit: int | None = None,
    ) -> list[MonitoringAlert]:
        """Return alerts newest first, optionally filtered."""
        alerts = [
            a
            for a in reversed(self._history)
            if (test_id is None or a.test_id == test_id)
            and (alert_type is None or a.type == alert_type)
            and (severity is None or a.severity == severity)
            and not (unacknowledged_only and a.acknowledged)
        ]
        if limit is not None:
            alerts = alerts[:limit]
        return alerts

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns False if it is unknown."""
        found = False
        for alerts in self._open_critical.values():
            alert = alerts.pop(alert_id, None)
            if alert is not None:
                alert.acknowledged = True
                found = True
                break
        for alert in self._history:
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return found

    def open_critical(self, test_id: str) -> list[MonitoringAlert]:
        """Unacknowledged critical alerts for a test, newest first.

        These survive history trimming; only ``acknowledge`` and
        ``clear_alerts`` remove them.
        """
        return list(reversed(self._open_critical.get(test_id, {}).values()))

    def clear_alerts(self, test_id: str | None = None) -> int:
        """Drop stored alerts for one test, or all of them.

        Returns:
            Number of alerts removed.
        """
        if test_id is None:
            removed = {a.id for a in self._history}
            for alerts in self._open_critical.values():
                removed.update(alerts)
            self._history.clear()
            self._open_critical.clear()
            return len(removed)

        removed = {a.id for a in self._history if a.test_id == test_id}
        removed.update(self._open_critical.pop(test_id, {}))
        kept = [a for a in self._history if a.test_id != test_id]
        self._history.clear()
        self._history.extend(kept)
        return len(removed)
