"""
Metric definitions, samples and window aggregations

A metric is one of three kinds:

- COUNT: how many times an event happened
- NUMERIC: distribution of a reported number (latency, basket size, ...)
- CONVERSION: share of encounters that were followed by a success
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from bitswitch.schemas.rollout import CamelModel, ensure_utc
from pydantic import Field, field_validator, model_validator


class MetricType(str, Enum):
    COUNT = "COUNT"
    NUMERIC = "NUMERIC"
    CONVERSION = "CONVERSION"


class AggregationMethod(str, Enum):
    """Statistic used as the current value of a NUMERIC metric"""

    AVERAGE = "AVERAGE"
    P50 = "P50"
    P75 = "P75"
    P90 = "P90"
    P95 = "P95"
    P99 = "P99"
    SUM = "SUM"


class MetricEventType(str, Enum):
    COUNT_INCREMENT = "COUNT_INCREMENT"
    NUMERIC_VALUE = "NUMERIC_VALUE"
    CONVERSION_ENCOUNTER = "CONVERSION_ENCOUNTER"
    CONVERSION_SUCCESS = "CONVERSION_SUCCESS"


class ConversionStep(str, Enum):
    ENCOUNTER = "ENCOUNTER"
    SUCCESS = "SUCCESS"


_STEP_BY_EVENT = {
    MetricEventType.CONVERSION_ENCOUNTER: ConversionStep.ENCOUNTER,
    MetricEventType.CONVERSION_SUCCESS: ConversionStep.SUCCESS,
}


class MetricDefinition(CamelModel):
    """Tracked metric"""

    id: str
    key: str
    metric_type: MetricType
    aggregation_method: Optional[AggregationMethod] = None
    is_active: bool = True


class MetricSample(CamelModel):
    """A single metric event reported by an SDK"""

    metric_key: str = Field(..., min_length=1)
    event_type: MetricEventType
    numeric_value: Optional[float] = None
    conversion_step: Optional[ConversionStep] = None
    recorded_at: Optional[datetime] = None

    @field_validator("recorded_at")
    @classmethod
    def _utc_recorded_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_payload(self) -> "MetricSample":
        if self.event_type == MetricEventType.NUMERIC_VALUE and self.numeric_value is None:
            raise ValueError("numericValue is required for NUMERIC_VALUE events")
        implied = _STEP_BY_EVENT.get(self.event_type)
        if implied is not None:
            if self.conversion_step is not None and self.conversion_step != implied:
                raise ValueError(f"conversionStep {self.conversion_step.value} contradicts {self.event_type.value}")
            self.conversion_step = implied
        return self


class MetricAggregation(CamelModel):
    """Aggregated metric values over one time window"""

    metric_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    count_total: int = 0
    numeric_count: int = 0
    numeric_sum: Optional[float] = None
    numeric_avg: Optional[float] = None
    numeric_p50: Optional[float] = None
    numeric_p75: Optional[float] = None
    numeric_p90: Optional[float] = None
    numeric_p95: Optional[float] = None
    numeric_p99: Optional[float] = None
    conversion_encounters: int = 0
    conversion_successes: int = 0
    conversion_rate: float = 0.0
