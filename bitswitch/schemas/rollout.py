"""
Rollout configuration schemas.

A flag's rollout configuration is a closed union of three shapes, selected
by the ``type`` discriminant:

- PERCENTAGE: fixed percentage, optionally bounded by a start/end window
- PROGRESSIVE_ROLLOUT: start percentage raised by a fixed increment every
  ``frequency`` until ``maxPercentage``
- CUSTOM_PROGRESSIVE_ROLLOUT: explicit list of stages

Both progressive shapes carry a ``currentStage`` cursor which is the only
part of the configuration the stage scheduler mutates.

The persisted/wire format uses camelCase keys (``startPercentage``,
``currentStage.nextProgressAt``); python attributes are snake_case.

Usage:
    from bitswitch.schemas.rollout import parse_rollout_config

    config = parse_rollout_config({"type": "PERCENTAGE", "percentage": 30})
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from bitswitch.core.exceptions import InvalidRolloutConfigError
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


class RolloutType(str, Enum):
    """Rollout strategy discriminant."""

    PERCENTAGE = "PERCENTAGE"
    PROGRESSIVE_ROLLOUT = "PROGRESSIVE_ROLLOUT"
    CUSTOM_PROGRESSIVE_ROLLOUT = "CUSTOM_PROGRESSIVE_ROLLOUT"


class FrequencyUnit(str, Enum):
    """Time unit for progressive frequencies and stage durations."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CamelModel(BaseModel):
    """Base model accepting both camelCase (wire) and snake_case (python) keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the persisted camelCase JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Frequency(CamelModel):
    """Interval between two progressive stages."""

    value: int = Field(..., gt=0)
    unit: FrequencyUnit

    def to_timedelta(self) -> timedelta:
        if self.unit == FrequencyUnit.MINUTES:
            return timedelta(minutes=self.value)
        if self.unit == FrequencyUnit.HOURS:
            return timedelta(hours=self.value)
        return timedelta(days=self.value)


class CurrentStage(CamelModel):
    """Stage cursor of a progressive rollout."""

    stage: int = Field(..., ge=0)
    percentage: float = Field(..., ge=0, le=100)
    next_progress_at: Optional[datetime] = None

    @field_validator("next_progress_at")
    @classmethod
    def _utc_next_progress_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class PercentageRollout(CamelModel):
    """Fixed percentage rollout with an optional activity window."""

    type: Literal["PERCENTAGE"] = "PERCENTAGE"
    percentage: float = Field(..., ge=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc_window(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "PercentageRollout":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class ProgressiveRollout(CamelModel):
    """Rollout raised by a fixed increment on a fixed cadence."""

    type: Literal["PROGRESSIVE_ROLLOUT"] = "PROGRESSIVE_ROLLOUT"
    start_percentage: float = Field(..., ge=0, le=100)
    increment_percentage: float = Field(..., gt=0, le=100)
    max_percentage: float = Field(..., ge=0, le=100)
    frequency: Frequency
    start_date: Optional[datetime] = None
    current_stage: Optional[CurrentStage] = None

    @field_validator("start_date")
    @classmethod
    def _utc_start_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ProgressiveRollout":
        if self.start_percentage > self.max_percentage:
            raise ValueError("startPercentage must not exceed maxPercentage")
        if self.current_stage is None:
            self.current_stage = CurrentStage(stage=0, percentage=self.start_percentage)
        if self.current_stage.percentage > self.max_percentage:
            raise ValueError("currentStage.percentage must not exceed maxPercentage")
        return self

    def percentage_for_stage(self, stage: int) -> float:
        return min(self.start_percentage + stage * self.increment_percentage, self.max_percentage)


class CustomStage(CamelModel):
    """One operator-defined stage of a custom progressive rollout.

    ``stage_date`` is the absolute time the stage becomes active;
    ``duration`` is how long the rollout dwells in it before moving on.
    """

    stage: int = Field(..., ge=0)
    percentage: float = Field(..., ge=0, le=100)
    duration: Optional[Frequency] = None
    stage_date: Optional[datetime] = None

    @field_validator("stage_date")
    @classmethod
    def _utc_stage_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class CustomProgressiveRollout(CamelModel):
    """Rollout following an explicit, ordered list of stages."""

    type: Literal["CUSTOM_PROGRESSIVE_ROLLOUT"] = "CUSTOM_PROGRESSIVE_ROLLOUT"
    stages: List[CustomStage] = Field(..., min_length=1)
    current_stage: Optional[CurrentStage] = None

    @field_validator("stages")
    @classmethod
    def _order_stages(cls, stages: List[CustomStage]) -> List[CustomStage]:
        ordered = sorted(stages, key=lambda s: s.stage)
        numbers = [s.stage for s in ordered]
        if len(set(numbers)) != len(numbers):
            raise ValueError("stage numbers must be unique")
        for previous, current in zip(ordered, ordered[1:]):
            if current.percentage < previous.percentage:
                raise ValueError("stage percentages must be non-decreasing")
        return ordered

    @model_validator(mode="after")
    def _check_cursor(self) -> "CustomProgressiveRollout":
        if self.current_stage is None:
            self.current_stage = CurrentStage(stage=0, percentage=self.stages[0].percentage)
        if self.current_stage.stage > len(self.stages) - 1:
            raise ValueError("currentStage.stage is out of range")
        return self


RolloutConfig = Annotated[
    Union[PercentageRollout, ProgressiveRollout, CustomProgressiveRollout],
    Field(discriminator="type"),
]

_rollout_adapter = TypeAdapter(RolloutConfig)


def parse_rollout_config(data: Any, flag_id: Optional[str] = None) -> RolloutConfig:
    """Validate a persisted rollout configuration.

    Args:
        data: Mapping with a ``type`` discriminant and the strategy fields
        flag_id: Owning flag, for error reporting

    Returns:
        One of PercentageRollout, ProgressiveRollout, CustomProgressiveRollout

    Raises:
        InvalidRolloutConfigError: If the mapping is missing or malformed
    """
    if isinstance(data, (PercentageRollout, ProgressiveRollout, CustomProgressiveRollout)):
        return data
    if not isinstance(data, dict):
        raise InvalidRolloutConfigError("Rollout config must be a mapping", flag_id=flag_id)
    try:
        return _rollout_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidRolloutConfigError(f"Invalid rollout config: {e.error_count()} error(s): {e}", flag_id=flag_id)
