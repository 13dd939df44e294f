"""Alert definitions and the events the alert evaluator emits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class AlertOperator(str, Enum):
    """Threshold comparison operators."""

    EQUALS_TO = "EQUALS_TO"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"


@dataclass
class AlertDefinition:
    """Threshold alert on a metric.

    ``operator`` stays a plain string so a definition persisted with an
    operator this version does not know can still be loaded and reported.
    """

    id: str
    metric_id: str
    operator: str
    threshold: float
    is_enabled: bool = True
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertDefinition":
        return cls(
            id=str(data["id"]),
            metric_id=str(data.get("metric_id", data.get("metricId"))),
            operator=str(data.get("operator", "")),
            threshold=float(data["threshold"]),
            is_enabled=bool(data.get("is_enabled", data.get("isEnabled", True))),
            name=data.get("name"),
        )


@dataclass
class AlertTriggeredEvent:
    """Notification intent for a crossed threshold."""

    alert_id: str
    metric_id: str
    current_value: float
    threshold: float
    operator: str
    triggered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "alert_triggered",
            "alert_id": self.alert_id,
            "metric_id": self.metric_id,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "operator": self.operator,
            "triggered_at": self.triggered_at.isoformat(),
        }


@dataclass
class AlertConfigurationIssue:
    """Notification intent for an alert that cannot be evaluated."""

    alert_id: str
    metric_id: str
    operator: str
    message: str
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "alert_configuration_issue",
            "alert_id": self.alert_id,
            "metric_id": self.metric_id,
            "operator": self.operator,
            "message": self.message,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class AlertCheckResult:
    alert_id: str
    triggered: bool
    current_value: float
    event: Optional[AlertTriggeredEvent] = None


@dataclass
class AlertSweepReport:
    """Summary of one alert sweep."""

    checked: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    no_value: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
