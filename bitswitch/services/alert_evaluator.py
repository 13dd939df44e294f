"""Alert Threshold Evaluator.

Compares metric values against alert thresholds and emits notification
intents through the notification sink. Delivery (email, Slack, ...) is the
sink's concern.

Usage:
    evaluator = AlertThresholdEvaluator(alert_store, metric_store, sink)

    result = await evaluator.check_alert("alert-1", current_value=12.5)
    report = await evaluator.run_alert_sweep()
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from bitswitch.core.exceptions import AlertConfigurationError, AlertNotFoundError, StoreUnavailableError
from bitswitch.core.logging import get_logger
from bitswitch.core.metrics import alerts_checked_total
from bitswitch.schemas.alert import (
    AlertCheckResult,
    AlertConfigurationIssue,
    AlertDefinition,
    AlertOperator,
    AlertSweepReport,
    AlertTriggeredEvent,
)
from bitswitch.schemas.rollout import ensure_utc

if TYPE_CHECKING:
    from bitswitch.services.stores import AlertStore, MetricStore, NotificationSink

logger = get_logger(__name__)


def check(alert: AlertDefinition, current_value: float) -> bool:
    """Check whether ``current_value`` crosses the alert threshold.

    Disabled alerts are never evaluated and return False.

    Raises:
        AlertConfigurationError: If the alert's operator is not supported
    """
    if not alert.is_enabled:
        return False

    try:
        operator = AlertOperator(alert.operator)
    except ValueError:
        raise AlertConfigurationError(
            f"Unsupported alert operator: {alert.operator!r}",
            alert_id=alert.id,
            metric_id=alert.metric_id,
        )

    if operator == AlertOperator.EQUALS_TO:
        return current_value == alert.threshold
    if operator == AlertOperator.GREATER_THAN:
        return current_value > alert.threshold
    return current_value < alert.threshold


class AlertThresholdEvaluator:
    """Checks alerts and notifies the sink when thresholds are crossed."""

    def __init__(
        self,
        alert_store: "AlertStore",
        metric_store: "MetricStore",
        sink: "NotificationSink",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.alert_store = alert_store
        self.metric_store = metric_store
        self.sink = sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def check_alert(self, alert_id: str, current_value: float) -> AlertCheckResult:
        """Check one alert against a supplied metric value.

        Raises:
            AlertNotFoundError: If no alert has this id
            AlertConfigurationError: If the alert cannot be evaluated
        """
        alert = await self.alert_store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return await self._check(alert, current_value, ensure_utc(self._clock()))

    async def run_alert_sweep(self, now: Optional[datetime] = None) -> AlertSweepReport:
        """Check every enabled alert against its metric's current value.

        Failures are isolated per alert and reported in the sweep report.

        Raises:
            StoreUnavailableError: If the enabled alerts cannot be listed
        """
        now = ensure_utc(now or self._clock())
        report = AlertSweepReport()

        try:
            alerts = await self.alert_store.list_enabled_alerts()
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError("Failed to list enabled alerts", original_error=e) from e

        for alert in alerts:
            try:
                current_value = await self.metric_store.get_current_value(alert.metric_id)
                if current_value is None:
                    alerts_checked_total.labels(outcome="no_value").inc()
                    report.no_value.append(alert.id)
                    continue

                report.checked.append(alert.id)
                result = await self._check(alert, current_value, now)
                if result.triggered:
                    report.triggered.append(alert.id)
            except Exception as e:
                if not isinstance(e, AlertConfigurationError):
                    alerts_checked_total.labels(outcome="failed").inc()
                logger.error("alert_check_failed", alert_id=alert.id, metric_id=alert.metric_id, error=str(e))
                report.failed.append(alert.id)

        logger.info(
            "alert_sweep_completed",
            checked=len(report.checked),
            triggered=len(report.triggered),
            no_value=len(report.no_value),
            failed=len(report.failed),
        )
        return report

    async def _check(self, alert: AlertDefinition, current_value: float, now: datetime) -> AlertCheckResult:
        if not alert.is_enabled:
            alerts_checked_total.labels(outcome="disabled").inc()
            return AlertCheckResult(alert_id=alert.id, triggered=False, current_value=current_value)

        try:
            triggered = check(alert, current_value)
        except AlertConfigurationError as e:
            alerts_checked_total.labels(outcome="config_error").inc()
            logger.warning("alert_configuration_error", alert_id=alert.id, operator=alert.operator, error=str(e))
            await self.sink.notify(
                AlertConfigurationIssue(
                    alert_id=alert.id,
                    metric_id=alert.metric_id,
                    operator=alert.operator,
                    message=str(e),
                    detected_at=now,
                )
            )
            raise

        if not triggered:
            alerts_checked_total.labels(outcome="within_threshold").inc()
            return AlertCheckResult(alert_id=alert.id, triggered=False, current_value=current_value)

        event = AlertTriggeredEvent(
            alert_id=alert.id,
            metric_id=alert.metric_id,
            current_value=current_value,
            threshold=alert.threshold,
            operator=alert.operator,
            triggered_at=now,
        )
        await self.sink.notify(event)
        alerts_checked_total.labels(outcome="triggered").inc()
        logger.info(
            "alert_triggered",
            alert_id=alert.id,
            metric_id=alert.metric_id,
            current_value=current_value,
            threshold=alert.threshold,
            operator=alert.operator,
        )
        return AlertCheckResult(alert_id=alert.id, triggered=True, current_value=current_value, event=event)
