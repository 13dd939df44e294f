"""Unit tests for rollout configuration parsing and validation."""

from datetime import datetime, timedelta, timezone

import pytest
from bitswitch.core.exceptions import InvalidRolloutConfigError
from bitswitch.schemas.rollout import (
    CustomProgressiveRollout,
    Frequency,
    FrequencyUnit,
    PercentageRollout,
    ProgressiveRollout,
    parse_rollout_config,
)


class TestPercentageRollout:
    def test_parse(self):
        config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30})
        assert isinstance(config, PercentageRollout)
        assert config.percentage == 30

    def test_window_dates_are_utc(self):
        config = parse_rollout_config(
            {"type": "PERCENTAGE", "percentage": 30, "startDate": "2024-06-01T00:00:00", "endDate": "2024-07-01T00:00:00Z"}
        )
        assert config.start_date.tzinfo is not None
        assert config.end_date == datetime(2024, 7, 1, tzinfo=timezone.utc)

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(
                {"type": "PERCENTAGE", "percentage": 30, "startDate": "2024-07-01T00:00:00Z", "endDate": "2024-06-01T00:00:00Z"}
            )

    @pytest.mark.parametrize("percentage", [-1, 100.5])
    def test_out_of_range_percentage_rejected(self, percentage):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config({"type": "PERCENTAGE", "percentage": percentage})


class TestProgressiveRollout:
    @pytest.fixture
    def data(self):
        return {
            "type": "PROGRESSIVE_ROLLOUT",
            "startPercentage": 5,
            "incrementPercentage": 10,
            "maxPercentage": 25,
            "frequency": {"value": 1, "unit": "hours"},
        }

    def test_defaults_current_stage_to_start(self, data):
        config = parse_rollout_config(data)
        assert isinstance(config, ProgressiveRollout)
        assert config.current_stage.stage == 0
        assert config.current_stage.percentage == 5
        assert config.current_stage.next_progress_at is None

    def test_percentage_for_stage_caps_at_max(self, data):
        config = parse_rollout_config(data)
        assert config.percentage_for_stage(1) == 15
        assert config.percentage_for_stage(2) == 25
        assert config.percentage_for_stage(7) == 25

    def test_start_above_max_rejected(self, data):
        data["startPercentage"] = 30
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(data)

    def test_current_stage_above_max_rejected(self, data):
        data["currentStage"] = {"stage": 3, "percentage": 35}
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(data)

    def test_zero_increment_rejected(self, data):
        data["incrementPercentage"] = 0
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(data)

    def test_snake_case_keys_accepted(self):
        config = parse_rollout_config(
            {
                "type": "PROGRESSIVE_ROLLOUT",
                "start_percentage": 10,
                "increment_percentage": 10,
                "max_percentage": 50,
                "frequency": {"value": 30, "unit": "minutes"},
            }
        )
        assert config.start_percentage == 10

    def test_wire_format_is_camel_case(self, data):
        data["currentStage"] = {"stage": 1, "percentage": 15, "nextProgressAt": "2024-06-01T13:00:00Z"}
        wire = parse_rollout_config(data).to_wire()

        assert wire["type"] == "PROGRESSIVE_ROLLOUT"
        assert wire["startPercentage"] == 5
        assert wire["currentStage"]["nextProgressAt"].startswith("2024-06-01T13:00:00")
        assert parse_rollout_config(wire).current_stage.stage == 1


class TestFrequency:
    @pytest.mark.parametrize(
        "unit,expected",
        [
            (FrequencyUnit.MINUTES, timedelta(minutes=3)),
            (FrequencyUnit.HOURS, timedelta(hours=3)),
            (FrequencyUnit.DAYS, timedelta(days=3)),
        ],
    )
    def test_to_timedelta(self, unit, expected):
        assert Frequency(value=3, unit=unit).to_timedelta() == expected


class TestCustomProgressiveRollout:
    def test_stages_sorted_by_number(self):
        config = parse_rollout_config(
            {
                "type": "CUSTOM_PROGRESSIVE_ROLLOUT",
                "stages": [
                    {"stage": 1, "percentage": 50},
                    {"stage": 0, "percentage": 10},
                ],
            }
        )
        assert isinstance(config, CustomProgressiveRollout)
        assert [s.stage for s in config.stages] == [0, 1]
        assert config.current_stage.percentage == 10

    def test_decreasing_percentages_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(
                {
                    "type": "CUSTOM_PROGRESSIVE_ROLLOUT",
                    "stages": [{"stage": 0, "percentage": 50}, {"stage": 1, "percentage": 10}],
                }
            )

    def test_duplicate_stage_numbers_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(
                {
                    "type": "CUSTOM_PROGRESSIVE_ROLLOUT",
                    "stages": [{"stage": 0, "percentage": 10}, {"stage": 0, "percentage": 20}],
                }
            )

    def test_cursor_out_of_range_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config(
                {
                    "type": "CUSTOM_PROGRESSIVE_ROLLOUT",
                    "stages": [{"stage": 0, "percentage": 10}],
                    "currentStage": {"stage": 1, "percentage": 10},
                }
            )

    def test_empty_stages_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config({"type": "CUSTOM_PROGRESSIVE_ROLLOUT", "stages": []})


class TestParseErrors:
    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidRolloutConfigError):
            parse_rollout_config({"type": "EVERYONE", "percentage": 10})

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidRolloutConfigError) as exc_info:
            parse_rollout_config("PERCENTAGE", flag_id="flag-1")
        assert exc_info.value.flag_id == "flag-1"

    def test_model_instances_pass_through(self):
        config = PercentageRollout(percentage=10)
        assert parse_rollout_config(config) is config
