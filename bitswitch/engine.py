"""Rollout engine facade.

Wires the flag evaluation service, the progressive stage scheduler, the
metric window aggregator and the alert threshold evaluator to a set of
stores.

Usage:
    from bitswitch.engine import RolloutEngine

    engine = RolloutEngine.from_settings()
    result = await engine.evaluate("new-checkout", "PROD", {"userId": "user-42"}, org_slug="acme")
    report = await engine.run_scheduler_tick()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from bitswitch.core.config import settings
from bitswitch.core.logging import get_logger
from bitswitch.schemas.alert import AlertCheckResult, AlertSweepReport
from bitswitch.schemas.evaluation import Environment, EvaluationRequest, EvaluationResult
from bitswitch.services.alert_evaluator import AlertThresholdEvaluator
from bitswitch.services.evaluation_service import FlagEvaluationService
from bitswitch.services.metric_aggregation import AggregationRunReport, MetricWindowAggregator
from bitswitch.services.rule_engine import UserContext
from bitswitch.services.stage_scheduler import ProgressiveStageScheduler, TickReport
from bitswitch.services.stores import (
    AlertStore,
    ConfigStore,
    LoggingNotificationSink,
    MetricSampleStore,
    MetricStore,
    NotificationSink,
)

logger = get_logger(__name__)


class RolloutEngine:
    """Flag evaluation, progressive rollout scheduling, metric aggregation and alerting."""

    def __init__(
        self,
        config_store: ConfigStore,
        metric_store: MetricStore,
        alert_store: AlertStore,
        sink: NotificationSink,
        clock: Optional[Callable[[], datetime]] = None,
        sample_store: Optional[MetricSampleStore] = None,
    ):
        clock = clock or (lambda: datetime.now(timezone.utc))
        self.config_store = config_store
        self.evaluation_service = FlagEvaluationService(config_store, clock=clock)
        self.scheduler = ProgressiveStageScheduler(config_store, clock=clock)
        self.alert_evaluator = AlertThresholdEvaluator(alert_store, metric_store, sink, clock=clock)
        self.metric_aggregator = MetricWindowAggregator(
            sample_store or metric_store,
            window=timedelta(minutes=max(1, settings.METRIC_AGGREGATION_INTERVAL_MINUTES)),
            clock=clock,
        )

    @classmethod
    def from_settings(cls, sink: Optional[NotificationSink] = None) -> "RolloutEngine":
        """Engine backed by the configured SQL database."""
        from bitswitch.services.sql_stores import SqlAlertStore, SqlConfigStore, SqlMetricStore

        logger.info("rollout_engine_sql_stores")
        return cls(
            config_store=SqlConfigStore(),
            metric_store=SqlMetricStore(),
            alert_store=SqlAlertStore(),
            sink=sink or LoggingNotificationSink(),
        )

    async def evaluate(
        self,
        flag_key: str,
        environment: Union[Environment, str],
        user_context: Union[UserContext, Dict[str, Any], None] = None,
        org_slug: Optional[str] = None,
    ) -> EvaluationResult:
        return await self.evaluation_service.evaluate(flag_key, environment, user_context, org_slug)

    async def evaluate_request(self, request: Union[EvaluationRequest, Dict[str, Any]]) -> EvaluationResult:
        """Evaluate an SDK request payload (camelCase or snake_case keys).

        Raises:
            pydantic.ValidationError: If the payload is malformed
        """
        if not isinstance(request, EvaluationRequest):
            request = EvaluationRequest.model_validate(request)
        return await self.evaluate(request.flag_key, request.environment, request.user_context, request.org_slug)

    async def run_scheduler_tick(self, now: Optional[datetime] = None) -> TickReport:
        return await self.scheduler.run_tick(now)

    async def check_alert(self, alert_id: str, current_value: float) -> AlertCheckResult:
        return await self.alert_evaluator.check_alert(alert_id, current_value)

    async def run_alert_sweep(self, now: Optional[datetime] = None) -> AlertSweepReport:
        return await self.alert_evaluator.run_alert_sweep(now)

    async def run_metric_aggregation(self, now: Optional[datetime] = None) -> AggregationRunReport:
        return await self.metric_aggregator.run_aggregation(now)
