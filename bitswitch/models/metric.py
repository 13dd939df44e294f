"""Metric, metric event and metric aggregation models."""

from __future__ import annotations

from datetime import datetime

from bitswitch.core.database import Base
from bitswitch.schemas.metric import MetricAggregation, MetricDefinition, MetricSample
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String


class Metric(Base):
    """Tracked metric definition."""

    __tablename__ = "metrics"

    id = Column(String(64), primary_key=True)
    org_slug = Column(String(100), nullable=True, index=True)
    key = Column(String(255), nullable=False, index=True)
    metric_type = Column(String(20), nullable=False)  # COUNT, NUMERIC, CONVERSION
    aggregation_method = Column(String(20), nullable=True)  # NUMERIC only
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Metric(key='{self.key}', type={self.metric_type})>"

    def to_schema(self) -> MetricDefinition:
        return MetricDefinition(
            id=self.id,
            key=self.key,
            metric_type=self.metric_type,
            aggregation_method=self.aggregation_method,
            is_active=self.is_active,
        )


class MetricEvent(Base):
    """A single reported metric event."""

    __tablename__ = "metric_events"

    __table_args__ = (Index("ix_metric_events_metric_recorded", "metric_id", "recorded_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_id = Column(String(64), ForeignKey("metrics.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(String(30), nullable=False)  # COUNT_INCREMENT, NUMERIC_VALUE, CONVERSION_*
    numeric_value = Column(Float, nullable=True)
    conversion_step = Column(String(20), nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_schema(self, metric_key: str) -> MetricSample:
        return MetricSample(
            metric_key=metric_key,
            event_type=self.event_type,
            numeric_value=self.numeric_value,
            conversion_step=self.conversion_step,
            recorded_at=self.recorded_at,
        )


class MetricAggregationRecord(Base):
    """Aggregated metric values for one time window."""

    __tablename__ = "metric_aggregations"

    __table_args__ = (Index("ix_metric_aggregations_metric_window", "metric_id", "window_end"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_id = Column(String(64), ForeignKey("metrics.id", ondelete="CASCADE"), nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)

    count_total = Column(Integer, nullable=False, default=0)
    numeric_count = Column(Integer, nullable=False, default=0)
    numeric_sum = Column(Float, nullable=True)
    numeric_avg = Column(Float, nullable=True)
    numeric_p50 = Column(Float, nullable=True)
    numeric_p75 = Column(Float, nullable=True)
    numeric_p90 = Column(Float, nullable=True)
    numeric_p95 = Column(Float, nullable=True)
    numeric_p99 = Column(Float, nullable=True)
    conversion_encounters = Column(Integer, nullable=False, default=0)
    conversion_successes = Column(Integer, nullable=False, default=0)
    conversion_rate = Column(Float, nullable=False, default=0.0)

    _VALUE_FIELDS = (
        "count_total",
        "numeric_count",
        "numeric_sum",
        "numeric_avg",
        "numeric_p50",
        "numeric_p75",
        "numeric_p90",
        "numeric_p95",
        "numeric_p99",
        "conversion_encounters",
        "conversion_successes",
        "conversion_rate",
    )

    @classmethod
    def from_schema(cls, metric_id: str, aggregation: MetricAggregation) -> "MetricAggregationRecord":
        return cls(
            metric_id=metric_id,
            window_start=aggregation.window_start,
            window_end=aggregation.window_end,
            **{name: getattr(aggregation, name) for name in cls._VALUE_FIELDS},
        )

    def to_schema(self) -> MetricAggregation:
        return MetricAggregation(
            metric_id=self.metric_id,
            window_start=self.window_start,
            window_end=self.window_end,
            **{name: getattr(self, name) for name in self._VALUE_FIELDS},
        )
