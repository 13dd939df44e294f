"""Tests for request-time flag evaluation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from bitswitch.core.exceptions import StoreUnavailableError
from bitswitch.schemas.evaluation import Environment, EvaluationReason
from bitswitch.services.evaluation_service import (
    FlagDefinition,
    FlagEvaluationService,
    FlagType,
    FlagVariation,
    normalize_weights,
)
from bitswitch.services.rule_engine import TargetingCondition, TargetingRule
from bitswitch.services.stage_scheduler import ProgressiveStageScheduler

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

INDIA = TargetingCondition(
    attribute_name="country", attribute_type="STRING", operator="equals", attribute_values=["IN"]
)


def _flag(**overrides) -> FlagDefinition:
    values = dict(
        id="flag-1",
        key="new-checkout",
        org_slug="acme",
        environment=Environment.PROD,
        value=True,
        default_value=False,
    )
    values.update(overrides)
    return FlagDefinition(**values)


@pytest.fixture
def service(config_store):
    return FlagEvaluationService(config_store, clock=lambda: NOW)


async def _evaluate(service, context=None, flag_key="new-checkout", environment="PROD"):
    return await service.evaluate(flag_key, environment, context or {"userId": "user-42"}, org_slug="acme")


class TestGates:
    """Checks that run before any bucketing."""

    @pytest.mark.asyncio
    async def test_flag_not_found(self, service):
        result = await _evaluate(service, flag_key="missing")

        assert result.reason == EvaluationReason.FLAG_NOT_FOUND
        assert result.enabled is False
        assert result.value is None

    @pytest.mark.asyncio
    async def test_flag_scoped_by_environment(self, service, config_store):
        config_store.add_flag(_flag(), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service, environment=Environment.STAGING)

        assert result.reason == EvaluationReason.FLAG_NOT_FOUND
        assert result.environment == "STAGING"

    @pytest.mark.asyncio
    async def test_kill_switch_short_circuits(self, service, config_store):
        rules = [TargetingRule(id="r1", name="everyone", conditions=[], force="include")]
        config_store.add_flag(_flag(kill_switch_active=True, rules=rules), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.KILL_SWITCH_ACTIVE
        assert result.enabled is False
        assert result.value is False
        assert result.rule_matched is None

    @pytest.mark.asyncio
    async def test_flag_disabled(self, service, config_store):
        config_store.add_flag(_flag(is_active=False), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.FLAG_DISABLED
        assert result.value is False

    @pytest.mark.asyncio
    async def test_environment_disabled(self, service, config_store):
        config_store.add_flag(_flag(is_environment_active=False), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.ENVIRONMENT_DISABLED

    @pytest.mark.asyncio
    async def test_missing_rollout_config(self, service, config_store):
        config_store.add_flag(_flag())

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.NO_ROLLOUT_CONFIG
        assert result.enabled is False
        assert result.value is False

    @pytest.mark.asyncio
    async def test_malformed_rollout_config(self, service, config_store):
        config_store.add_flag(_flag(), {"type": "PERCENTAGE", "percentage": 250})

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.NO_ROLLOUT_CONFIG
        assert result.enabled is False


class TestFailOpen:
    """Evaluation never raises."""

    @pytest.mark.asyncio
    async def test_store_unavailable(self):
        store = AsyncMock()
        store.get_flag.side_effect = StoreUnavailableError("connection refused")

        result = await FlagEvaluationService(store).evaluate("new-checkout", "PROD", {"userId": "u"})

        assert result.reason == EvaluationReason.STORE_UNAVAILABLE
        assert result.enabled is False

    @pytest.mark.asyncio
    async def test_unexpected_error(self):
        store = AsyncMock()
        store.get_flag.side_effect = KeyError("boom")

        result = await FlagEvaluationService(store).evaluate("new-checkout", "PROD", {"userId": "u"})

        assert result.reason == EvaluationReason.EVALUATION_ERROR
        assert result.enabled is False

    @pytest.mark.asyncio
    async def test_unknown_environment(self, service):
        result = await service.evaluate("new-checkout", "QA", {"userId": "u"})

        assert result.reason == EvaluationReason.EVALUATION_ERROR
        assert result.environment == "QA"


class TestRules:
    @pytest.mark.asyncio
    async def test_rule_exclusion(self, service, config_store):
        rules = [TargetingRule(id="no-india", name="No India", conditions=[INDIA], force="exclude")]
        config_store.add_flag(_flag(rules=rules), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service, {"userId": "user-42", "country": "IN"})

        assert result.reason == EvaluationReason.RULE_EXCLUDED
        assert result.rule_matched == "no-india"
        assert result.enabled is False

    @pytest.mark.asyncio
    async def test_rule_inclusion_overrides_rollout(self, service, config_store):
        rules = [TargetingRule(id="india", name="India", conditions=[INDIA], value="in-variant")]
        config_store.add_flag(_flag(flag_type=FlagType.STRING, rules=rules), {"type": "PERCENTAGE", "percentage": 0})

        result = await _evaluate(service, {"userId": "user-42", "country": "IN"})

        assert result.reason == EvaluationReason.RULE_MATCHED
        assert result.rule_matched == "india"
        assert result.enabled is True
        assert result.value == "in-variant"

    @pytest.mark.asyncio
    async def test_unmatched_rule_falls_through(self, service, config_store):
        rules = [TargetingRule(id="no-india", name="No India", conditions=[INDIA], force="exclude")]
        config_store.add_flag(_flag(rules=rules), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service, {"userId": "user-42", "country": "US"})

        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.rule_matched is None

    @pytest.mark.asyncio
    async def test_unusable_condition_value_falls_through(self, service, config_store):
        groups = TargetingCondition(
            attribute_name="groups", attribute_type="ARRAY", operator="has_length", attribute_values=[float("inf")]
        )
        rules = [TargetingRule(id="no-groups", name="No groups", conditions=[groups], force="exclude")]
        config_store.add_flag(_flag(rules=rules), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service, {"userId": "user-42", "groups": ["beta"]})

        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.rule_matched is None

    @pytest.mark.asyncio
    async def test_rule_sub_rollout(self, service, config_store, fixed_bucket):
        fixed_bucket(2500)
        rules = [TargetingRule(id="india-30", name="India 30%", conditions=[INDIA], percentage=30)]
        config_store.add_flag(_flag(rules=rules), {"type": "PERCENTAGE", "percentage": 0})

        result = await _evaluate(service, {"userId": "user-42", "country": "IN"})
        assert result.reason == EvaluationReason.RULE_MATCHED
        assert result.enabled is True

        rules[0].percentage = 20
        result = await _evaluate(service, {"userId": "user-42", "country": "IN"})
        assert result.reason == EvaluationReason.RULE_ROLLOUT_EXCLUDED
        assert result.rule_matched == "india-30"
        assert result.enabled is False


class TestRollout:
    @pytest.mark.asyncio
    async def test_percentage_scenario(self, service, config_store, fixed_bucket):
        fixed_bucket(2500)
        config_store.add_flag(_flag(), {"type": "PERCENTAGE", "percentage": 30})

        result = await _evaluate(service)
        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.enabled is True
        assert result.value is True

        config_store.set_rollout_config("flag-1", {"type": "PERCENTAGE", "percentage": 20})
        result = await _evaluate(service)
        assert result.reason == EvaluationReason.ROLLOUT_EXCLUDED
        assert result.enabled is False
        assert result.value is False

    @pytest.mark.asyncio
    async def test_rollout_not_active(self, service, config_store):
        config_store.add_flag(
            _flag(),
            {"type": "PERCENTAGE", "percentage": 100, "startDate": (NOW + timedelta(days=1)).isoformat()},
        )

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.ROLLOUT_NOT_ACTIVE
        assert result.enabled is False

    @pytest.mark.asyncio
    async def test_rollout_window_ended(self, service, config_store):
        config_store.add_flag(
            _flag(),
            {"type": "PERCENTAGE", "percentage": 100, "endDate": (NOW - timedelta(seconds=1)).isoformat()},
        )

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.ROLLOUT_NOT_ACTIVE
        assert result.value is False

    @pytest.mark.asyncio
    async def test_inclusion_decided_by_rollout_evaluator(self, service, config_store, monkeypatch):
        calls = []

        def fake_is_included(config, flag_key, identity, now, salt=None):
            calls.append((flag_key, identity, now))
            return False

        monkeypatch.setattr("bitswitch.services.evaluation_service.is_included", fake_is_included)
        config_store.add_flag(_flag(), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.ROLLOUT_EXCLUDED
        assert calls == [("new-checkout", "user-42", NOW)]

    @pytest.mark.asyncio
    async def test_boolean_flag_without_value_serves_true(self, service, config_store):
        config_store.add_flag(_flag(value=None), {"type": "PERCENTAGE", "percentage": 100})

        result = await _evaluate(service)

        assert result.value is True

    @pytest.mark.asyncio
    async def test_progressive_rollout_follows_scheduler(self, config_store, fixed_bucket):
        fixed_bucket(1000)
        config_store.add_flag(
            _flag(),
            {
                "type": "PROGRESSIVE_ROLLOUT",
                "startPercentage": 5,
                "incrementPercentage": 10,
                "maxPercentage": 25,
                "frequency": {"value": 1, "unit": "hours"},
            },
        )
        service = FlagEvaluationService(config_store, clock=lambda: NOW)

        assert (await _evaluate(service)).reason == EvaluationReason.ROLLOUT_EXCLUDED

        await ProgressiveStageScheduler(config_store).run_tick(NOW)

        assert (await _evaluate(service)).reason == EvaluationReason.ROLLOUT_INCLUDED

    @pytest.mark.asyncio
    async def test_wire_shape(self, service, config_store):
        config_store.add_flag(_flag(), {"type": "PERCENTAGE", "percentage": 100})

        wire = (await _evaluate(service)).to_wire()

        assert wire == {
            "flagKey": "new-checkout",
            "environment": "PROD",
            "value": True,
            "defaultValue": False,
            "enabled": True,
            "reason": "ROLLOUT_INCLUDED",
        }


class TestVariations:
    @pytest.fixture
    def variations(self):
        return [
            FlagVariation(id="control", name="Control", value="A", weight=50),
            FlagVariation(id="treatment", name="Treatment", value="B", weight=50),
        ]

    def test_normalize_weights(self):
        ranges = normalize_weights(
            [
                FlagVariation(id="a", name="a", value=1, weight=50),
                FlagVariation(id="b", name="b", value=2, weight=30),
                FlagVariation(id="off", name="off", value=0, weight=0),
                FlagVariation(id="c", name="c", value=3, weight=20),
            ]
        )
        assert [(v.id, start, end) for v, start, end in ranges] == [
            ("a", 0, 4999),
            ("b", 5000, 7999),
            ("c", 8000, 9999),
        ]

    def test_normalize_zero_weights(self):
        assert normalize_weights([FlagVariation(id="a", name="a", value=1, weight=0)]) == []

    @pytest.mark.asyncio
    async def test_weighted_variation_selected(self, service, config_store, fixed_bucket, variations):
        fixed_bucket(7500)
        config_store.add_flag(
            _flag(flag_type=FlagType.AB_TEST, value=None, default_value="A", variations=variations),
            {"type": "PERCENTAGE", "percentage": 100},
        )

        result = await _evaluate(service)

        assert result.reason == EvaluationReason.ROLLOUT_INCLUDED
        assert result.variation_id == "treatment"
        assert result.value == "B"

    @pytest.mark.asyncio
    async def test_rule_variation_override(self, service, config_store, variations):
        rules = [TargetingRule(id="india", name="India", conditions=[INDIA], variation_id="control")]
        config_store.add_flag(
            _flag(flag_type=FlagType.MULTIVARIATE, value=None, default_value="A", variations=variations, rules=rules),
            {"type": "PERCENTAGE", "percentage": 0},
        )

        result = await _evaluate(service, {"userId": "user-42", "country": "IN"})

        assert result.variation_id == "control"
        assert result.value == "A"

    @pytest.mark.asyncio
    async def test_variation_sticky_per_identity(self, service, config_store, variations):
        config_store.add_flag(
            _flag(flag_type=FlagType.AB_TEST, value=None, variations=variations),
            {"type": "PERCENTAGE", "percentage": 100},
        )

        first = await _evaluate(service, {"userId": "user-7"})
        second = await _evaluate(service, {"userId": "user-7"})

        assert first.variation_id == second.variation_id
