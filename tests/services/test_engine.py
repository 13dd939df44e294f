"""Tests for the RolloutEngine facade wired to in-memory stores."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from bitswitch.engine import RolloutEngine
from bitswitch.schemas.alert import AlertDefinition, AlertTriggeredEvent
from bitswitch.schemas.evaluation import Environment, EvaluationReason
from bitswitch.schemas.metric import MetricDefinition, MetricSample
from bitswitch.services.evaluation_service import FlagDefinition
from bitswitch.services.sql_stores import SqlAlertStore, SqlConfigStore, SqlMetricStore
from bitswitch.services.stores import LoggingNotificationSink
from pydantic import ValidationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(config_store, metric_store, alert_store, sink):
    return RolloutEngine(config_store, metric_store, alert_store, sink, clock=lambda: NOW)


class TestRolloutEngine:
    @pytest.mark.asyncio
    async def test_evaluate(self, engine, config_store):
        config_store.add_flag(
            FlagDefinition(id="flag-1", key="new-checkout", environment=Environment.PROD, value=True),
            {"type": "PERCENTAGE", "percentage": 100},
        )

        result = await engine.evaluate("new-checkout", "PROD", {"userId": "user-42"})

        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.value is True

    @pytest.mark.asyncio
    async def test_evaluate_sdk_payload(self, engine, config_store):
        config_store.add_flag(
            FlagDefinition(id="flag-1", key="new-checkout", org_slug="acme", environment=Environment.STAGING),
            {"type": "PERCENTAGE", "percentage": 100},
        )

        result = await engine.evaluate_request(
            {"flagKey": "new-checkout", "environment": "STAGING", "userContext": {"userId": 42}, "orgSlug": "acme"}
        )

        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.environment == "STAGING"

    @pytest.mark.asyncio
    async def test_malformed_sdk_payload(self, engine):
        with pytest.raises(ValidationError):
            await engine.evaluate_request({"flagKey": "", "environment": "PROD"})

    @pytest.mark.asyncio
    async def test_scheduler_tick_uses_engine_clock(self, engine, config_store):
        config_store.set_rollout_config(
            "flag-1",
            {
                "type": "PROGRESSIVE_ROLLOUT",
                "startPercentage": 10,
                "incrementPercentage": 10,
                "maxPercentage": 50,
                "frequency": {"value": 1, "unit": "days"},
            },
        )

        report = await engine.run_scheduler_tick()

        assert report.now == NOW
        assert report.advanced == ["flag-1"]

    @pytest.mark.asyncio
    async def test_check_alert(self, engine, alert_store, sink):
        alert_store.add_alert(AlertDefinition(id="a-1", metric_id="m-1", operator="LESS_THAN", threshold=5.0))

        result = await engine.check_alert("a-1", 2.0)

        assert result.triggered is True
        assert isinstance(sink.events[0], AlertTriggeredEvent)

    @pytest.mark.asyncio
    async def test_alert_sweep(self, engine, alert_store, metric_store):
        alert_store.add_alert(AlertDefinition(id="a-1", metric_id="m-1", operator="EQUALS_TO", threshold=5.0))
        metric_store.set_value("m-1", 5.0)

        report = await engine.run_alert_sweep()

        assert report.triggered == ["a-1"]

    @pytest.mark.asyncio
    async def test_aggregation_feeds_alert_sweep(self, engine, alert_store, metric_store, sink):
        metric_store.add_metric(MetricDefinition(id="checkouts", key="checkouts", metric_type="COUNT"))
        for minutes in (1, 2):
            metric_store.add_sample(
                "checkouts",
                MetricSample(
                    metric_key="checkouts",
                    event_type="COUNT_INCREMENT",
                    recorded_at=NOW - timedelta(minutes=minutes),
                ),
            )
        alert_store.add_alert(AlertDefinition(id="a-1", metric_id="checkouts", operator="LESS_THAN", threshold=5.0))

        aggregation = await engine.run_metric_aggregation()
        sweep = await engine.run_alert_sweep()

        assert aggregation.recorded == ["checkouts"]
        assert aggregation.window_end == NOW
        assert sweep.triggered == ["a-1"]
        assert sink.events[0].current_value == 2.0

    @pytest.mark.asyncio
    async def test_separate_sample_store(self, config_store, metric_store, alert_store, sink):
        sample_store = AsyncMock()
        sample_store.list_active_metrics.return_value = []
        engine = RolloutEngine(
            config_store, metric_store, alert_store, sink, clock=lambda: NOW, sample_store=sample_store
        )

        await engine.run_metric_aggregation()

        sample_store.list_active_metrics.assert_awaited_once()

    def test_from_settings_uses_sql_stores(self):
        engine = RolloutEngine.from_settings()

        assert isinstance(engine.config_store, SqlConfigStore)
        assert isinstance(engine.alert_evaluator.metric_store, SqlMetricStore)
        assert isinstance(engine.alert_evaluator.alert_store, SqlAlertStore)
        assert isinstance(engine.alert_evaluator.sink, LoggingNotificationSink)
        assert engine.metric_aggregator.sample_store is engine.alert_evaluator.metric_store
