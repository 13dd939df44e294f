"""Unit tests for the rollout strategy evaluator."""

from datetime import datetime, timedelta, timezone

import pytest
from bitswitch.schemas.rollout import parse_rollout_config
from bitswitch.services.rollout_evaluator import effective_percentage, is_included, is_rollout_active

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat()


class TestEffectivePercentage:
    def test_plain_percentage(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30})
        assert effective_percentage(config, NOW) == 30

    def test_inside_window(self):
        config = parse_rollout_config(
            {
                "type": "PERCENTAGE",
                "percentage": 30,
                "startDate": _iso(NOW - timedelta(days=1)),
                "endDate": _iso(NOW + timedelta(days=1)),
            }
        )
        assert effective_percentage(config, NOW) == 30

    def test_before_window(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30, "startDate": _iso(NOW + timedelta(hours=1))})
        assert effective_percentage(config, NOW) == 0

    def test_after_window(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30, "endDate": _iso(NOW - timedelta(hours=1))})
        assert effective_percentage(config, NOW) == 0

    def test_progressive_uses_persisted_stage(self):
        config = parse_rollout_config(
            {
                "type": "PROGRESSIVE_ROLLOUT",
                "startPercentage": 5,
                "incrementPercentage": 10,
                "maxPercentage": 50,
                "frequency": {"value": 1, "unit": "hours"},
                # Overdue cursors are not advanced at evaluation time
                "currentStage": {"stage": 1, "percentage": 15, "nextProgressAt": _iso(NOW - timedelta(days=3))},
            }
        )
        assert effective_percentage(config, NOW) == 15

    def test_progressive_not_started(self):
        config = parse_rollout_config(
            {
                "type": "PROGRESSIVE_ROLLOUT",
                "startPercentage": 5,
                "incrementPercentage": 10,
                "maxPercentage": 50,
                "frequency": {"value": 1, "unit": "hours"},
                "startDate": _iso(NOW + timedelta(days=1)),
            }
        )
        assert effective_percentage(config, NOW) == 0

    def test_custom_uses_current_stage(self):
        config = parse_rollout_config(
            {
                "type": "CUSTOM_PROGRESSIVE_ROLLOUT",
                "stages": [{"stage": 0, "percentage": 10}, {"stage": 1, "percentage": 40}],
                "currentStage": {"stage": 1, "percentage": 40},
            }
        )
        assert effective_percentage(config, NOW) == 40

    def test_naive_now_treated_as_utc(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30, "startDate": _iso(NOW)})
        assert effective_percentage(config, datetime(2024, 6, 1, 12, 0)) == 30

    def test_unknown_variant_is_type_error(self):
        with pytest.raises(TypeError):
            effective_percentage(object(), NOW)


class TestIsRolloutActive:
    @pytest.mark.parametrize(
        "window,expected",
        [
            ({}, True),
            ({"startDate": _iso(NOW)}, True),
            ({"endDate": _iso(NOW)}, True),
            ({"startDate": _iso(NOW + timedelta(seconds=1))}, False),
            ({"endDate": _iso(NOW - timedelta(seconds=1))}, False),
        ],
    )
    def test_percentage_window(self, window, expected):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 0, **window})
        assert is_rollout_active(config, NOW) is expected

    @pytest.mark.parametrize("start,expected", [(None, True), (NOW, True), (NOW + timedelta(days=1), False)])
    def test_progressive_start(self, start, expected):
        data = {
            "type": "PROGRESSIVE_ROLLOUT",
            "startPercentage": 5,
            "incrementPercentage": 10,
            "maxPercentage": 50,
            "frequency": {"value": 1, "unit": "hours"},
        }
        if start is not None:
            data["startDate"] = _iso(start)
        assert is_rollout_active(parse_rollout_config(data), NOW) is expected

    def test_custom_is_always_active(self):
        config = parse_rollout_config(
            {"type": "CUSTOM_PROGRESSIVE_ROLLOUT", "stages": [{"stage": 0, "percentage": 10}]}
        )
        assert is_rollout_active(config, NOW) is True

    def test_unknown_variant_is_type_error(self):
        with pytest.raises(TypeError):
            is_rollout_active(object(), NOW)


class TestIsIncluded:
    def test_pinned_bucket_scenario(self, fixed_bucket):
        fixed_bucket(2500)

        assert is_included(parse_rollout_config({"type": "PERCENTAGE", "percentage": 30}), "checkout", "user-42", NOW)
        assert not is_included(parse_rollout_config({"type": "PERCENTAGE", "percentage": 20}), "checkout", "user-42", NOW)

    def test_outside_window_never_included(self):
        config = parse_rollout_config(
            {"type": "PERCENTAGE", "percentage": 100, "endDate": _iso(NOW - timedelta(seconds=1))}
        )
        assert not any(is_included(config, "checkout", f"user-{i}", NOW) for i in range(100))

    def test_full_percentage_includes_everyone(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 100})
        assert all(is_included(config, "checkout", f"user-{i}", NOW) for i in range(100))
