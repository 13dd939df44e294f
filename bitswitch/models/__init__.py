"""Database models"""

from bitswitch.models.alert import Alert
from bitswitch.models.flag import Flag, FlagRollout
from bitswitch.models.metric import Metric, MetricAggregationRecord, MetricEvent

__all__ = [
    "Alert",
    "Flag",
    "FlagRollout",
    "Metric",
    "MetricAggregationRecord",
    "MetricEvent",
]
