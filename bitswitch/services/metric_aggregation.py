"""Metric aggregation and current-value resolution.

Folds raw metric samples into a window aggregation and picks the value an
alert threshold is compared against, based on the metric's type:

- COUNT: total count in the window
- NUMERIC: the configured statistic (AVERAGE by default)
- CONVERSION: conversion rate as a percentage

``MetricWindowAggregator`` runs the fold for every active metric over the
last window and records the result, so alert sweeps see fresh values.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from bitswitch.core.exceptions import StoreUnavailableError
from bitswitch.core.logging import get_logger
from bitswitch.core.metrics import metric_aggregations_total
from bitswitch.schemas.metric import (
    AggregationMethod,
    MetricAggregation,
    MetricDefinition,
    MetricEventType,
    MetricSample,
    MetricType,
)
from bitswitch.schemas.rollout import ensure_utc

if TYPE_CHECKING:
    from bitswitch.services.stores import MetricSampleStore

logger = get_logger(__name__)

_PERCENTILE_FIELDS = {
    50: "numeric_p50",
    75: "numeric_p75",
    90: "numeric_p90",
    95: "numeric_p95",
    99: "numeric_p99",
}

_FIELD_BY_METHOD = {
    AggregationMethod.AVERAGE: "numeric_avg",
    AggregationMethod.SUM: "numeric_sum",
    AggregationMethod.P50: "numeric_p50",
    AggregationMethod.P75: "numeric_p75",
    AggregationMethod.P90: "numeric_p90",
    AggregationMethod.P95: "numeric_p95",
    AggregationMethod.P99: "numeric_p99",
}


def percentile(sorted_values: List[float], q: float) -> Optional[float]:
    """Percentile with linear interpolation between closest ranks.

    Args:
        sorted_values: Values in ascending order
        q: Percentile in [0, 100]

    Returns:
        Interpolated value, or None for an empty list
    """
    if not sorted_values:
        return None
    rank = (len(sorted_values) - 1) * q / 100
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def aggregate_samples(
    samples: Iterable[MetricSample],
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    metric_id: Optional[str] = None,
) -> MetricAggregation:
    """Aggregate samples falling in ``[window_start, window_end)``.

    Samples without ``recorded_at`` are always counted.
    """
    count_total = 0
    numeric_values: List[float] = []
    encounters = 0
    successes = 0

    for sample in samples:
        if sample.recorded_at is not None:
            if window_start is not None and sample.recorded_at < window_start:
                continue
            if window_end is not None and sample.recorded_at >= window_end:
                continue

        if sample.event_type == MetricEventType.COUNT_INCREMENT:
            count_total += 1
        elif sample.event_type == MetricEventType.NUMERIC_VALUE:
            numeric_values.append(float(sample.numeric_value))
        elif sample.event_type == MetricEventType.CONVERSION_ENCOUNTER:
            encounters += 1
        elif sample.event_type == MetricEventType.CONVERSION_SUCCESS:
            successes += 1

    aggregation = MetricAggregation(
        metric_id=metric_id,
        window_start=window_start,
        window_end=window_end,
        count_total=count_total,
        numeric_count=len(numeric_values),
        conversion_encounters=encounters,
        conversion_successes=successes,
        conversion_rate=(successes / encounters * 100) if encounters else 0.0,
    )

    if numeric_values:
        numeric_values.sort()
        total = sum(numeric_values)
        aggregation.numeric_sum = total
        aggregation.numeric_avg = total / len(numeric_values)
        for q, field_name in _PERCENTILE_FIELDS.items():
            setattr(aggregation, field_name, percentile(numeric_values, q))

    return aggregation


def resolve_metric_value(definition: MetricDefinition, aggregation: Optional[MetricAggregation]) -> Optional[float]:
    """Pick the value alerts compare for a metric.

    Returns:
        The current value, or None when the window holds no data for it
    """
    if aggregation is None:
        return None

    if definition.metric_type == MetricType.COUNT:
        return float(aggregation.count_total)

    if definition.metric_type == MetricType.NUMERIC:
        method = definition.aggregation_method or AggregationMethod.AVERAGE
        value = getattr(aggregation, _FIELD_BY_METHOD[method])
        return float(value) if value is not None else None

    if definition.metric_type == MetricType.CONVERSION:
        return float(aggregation.conversion_rate)

    logger.warning("unknown_metric_type", metric_id=definition.id, metric_type=definition.metric_type)
    return None


@dataclass
class AggregationRunReport:
    """What one aggregation run did, by metric id."""

    window_start: datetime
    window_end: datetime
    recorded: List[str] = field(default_factory=list)
    empty: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "recorded": len(self.recorded),
            "empty": len(self.empty),
            "failed": len(self.failed),
        }


class MetricWindowAggregator:
    """Aggregates each active metric's samples over the window ending now.

    Windows are ``[end - window, end)`` with ``end`` being ``now`` truncated
    to the minute, so consecutive cron runs tile without gaps. A metric with
    no samples in the window gets no aggregation row, so its latest value
    stays in place.
    """

    def __init__(
        self,
        sample_store: "MetricSampleStore",
        window: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if window <= timedelta(0):
            raise ValueError("aggregation window must be positive")
        self.sample_store = sample_store
        self.window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_aggregation(self, now: Optional[datetime] = None) -> AggregationRunReport:
        """Aggregate and record the last window of every active metric.

        Failures are isolated per metric and reported in the run report.

        Raises:
            StoreUnavailableError: If the active metrics cannot be listed
        """
        window_end = ensure_utc(now or self._clock()).replace(second=0, microsecond=0)
        window_start = window_end - self.window
        report = AggregationRunReport(window_start=window_start, window_end=window_end)

        try:
            metrics = await self.sample_store.list_active_metrics()
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError("Failed to list active metrics", original_error=e) from e

        for definition in metrics:
            try:
                samples = await self.sample_store.list_samples(definition.id, window_start, window_end)
                if not samples:
                    metric_aggregations_total.labels(outcome="empty").inc()
                    report.empty.append(definition.id)
                    continue

                aggregation = aggregate_samples(samples, window_start, window_end, metric_id=definition.id)
                await self.sample_store.record_aggregation(definition, aggregation)
                metric_aggregations_total.labels(outcome="recorded").inc()
                report.recorded.append(definition.id)
            except Exception as e:
                metric_aggregations_total.labels(outcome="failed").inc()
                logger.error("metric_aggregation_failed", metric_id=definition.id, error=str(e))
                report.failed.append(definition.id)

        logger.info(
            "metric_aggregation_completed",
            window_end=window_end.isoformat(),
            recorded=len(report.recorded),
            empty=len(report.empty),
            failed=len(report.failed),
        )
        return report
