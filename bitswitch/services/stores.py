"""Store interfaces consumed by the engine, with in-memory implementations.

The engine never talks to a database directly. It reads flags, rollout
configurations, metric samples and values, and alert definitions through
these narrow async interfaces and hands notification intents to a sink.
The in-memory implementations are used in tests and for embedding the
engine; the SQL adapter lives in ``bitswitch.services.sql_stores``.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple, Union

from bitswitch.core.exceptions import InvalidRolloutConfigError
from bitswitch.core.logging import get_logger
from bitswitch.schemas.alert import AlertDefinition
from bitswitch.schemas.evaluation import Environment
from bitswitch.schemas.metric import MetricAggregation, MetricDefinition, MetricSample
from bitswitch.schemas.rollout import CamelModel, CurrentStage, RolloutConfig, ensure_utc, parse_rollout_config
from bitswitch.services.metric_aggregation import resolve_metric_value
from bitswitch.services.stage_scheduler import is_due, is_progressive

if TYPE_CHECKING:
    from bitswitch.services.evaluation_service import FlagDefinition

logger = get_logger(__name__)


# ============================================================================
# Interfaces
# ============================================================================


class ConfigStore(Protocol):
    async def get_flag(
        self, org_slug: Optional[str], flag_key: str, environment: Environment
    ) -> Optional["FlagDefinition"]:
        ...

    async def get_rollout_config(self, flag_id: str) -> Optional[RolloutConfig]:
        """Load the flag's current rollout config.

        Raises:
            InvalidRolloutConfigError: If the persisted config is malformed
        """
        ...

    async def cas_advance_stage(self, flag_id: str, expected_stage: int, new_stage: CurrentStage) -> bool:
        """Replace the stage cursor only if it is still ``expected_stage``."""
        ...

    async def list_due_progressive_configs(self, now: datetime) -> List[str]:
        """Flag ids whose progressive rollout is due at ``now``."""
        ...


class MetricStore(Protocol):
    async def get_current_value(self, metric_id: str) -> Optional[float]:
        ...


class MetricSampleStore(Protocol):
    """Raw metric samples and the aggregations folded from them."""

    async def list_active_metrics(self) -> List[MetricDefinition]:
        ...

    async def list_samples(self, metric_id: str, window_start: datetime, window_end: datetime) -> List[MetricSample]:
        """Samples recorded in ``[window_start, window_end)``."""
        ...

    async def record_aggregation(self, definition: MetricDefinition, aggregation: MetricAggregation) -> None:
        ...


class AlertStore(Protocol):
    async def get_alert(self, alert_id: str) -> Optional[AlertDefinition]:
        ...

    async def list_enabled_alerts(self) -> List[AlertDefinition]:
        ...


class NotificationSink(Protocol):
    async def notify(self, event: Any) -> None:
        ...


# ============================================================================
# In-memory implementations
# ============================================================================


class InMemoryConfigStore:
    """Config store keeping flags and raw rollout configs in dictionaries.

    Rollout configs are kept in their persisted camelCase shape and parsed on
    every read, like a database-backed store would.
    """

    def __init__(self):
        self._flags: Dict[Tuple[Optional[str], str, str], "FlagDefinition"] = {}
        self._rollouts: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def add_flag(self, flag: "FlagDefinition", rollout: Union[CamelModel, Dict[str, Any], None] = None) -> None:
        self._flags[(flag.org_slug, flag.key, flag.environment.value)] = flag
        if rollout is not None:
            self.set_rollout_config(flag.id, rollout)

    def set_rollout_config(self, flag_id: str, rollout: Union[CamelModel, Dict[str, Any]]) -> None:
        data = rollout.to_wire() if isinstance(rollout, CamelModel) else copy.deepcopy(rollout)
        self._rollouts[flag_id] = data

    def raw_rollout_config(self, flag_id: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._rollouts.get(flag_id))

    async def get_flag(
        self, org_slug: Optional[str], flag_key: str, environment: Environment
    ) -> Optional["FlagDefinition"]:
        return self._flags.get((org_slug, flag_key, Environment(environment).value))

    async def get_rollout_config(self, flag_id: str) -> Optional[RolloutConfig]:
        data = self._rollouts.get(flag_id)
        if data is None:
            return None
        return parse_rollout_config(copy.deepcopy(data), flag_id=flag_id)

    async def cas_advance_stage(self, flag_id: str, expected_stage: int, new_stage: CurrentStage) -> bool:
        async with self._lock:
            data = self._rollouts.get(flag_id)
            if data is None:
                return False
            config = parse_rollout_config(copy.deepcopy(data), flag_id=flag_id)
            if not is_progressive(config) or config.current_stage.stage != expected_stage:
                return False
            data["currentStage"] = new_stage.to_wire()
            return True

    async def list_due_progressive_configs(self, now: datetime) -> List[str]:
        due = []
        for flag_id, data in self._rollouts.items():
            try:
                config = parse_rollout_config(copy.deepcopy(data), flag_id=flag_id)
            except InvalidRolloutConfigError as e:
                logger.warning("invalid_rollout_config_skipped", flag_id=flag_id, error=str(e))
                continue
            if is_due(config, now):
                due.append(flag_id)
        return due


class InMemoryMetricStore:
    """Metric store holding metric definitions, raw samples and the latest value per metric."""

    def __init__(self, values: Optional[Dict[str, float]] = None):
        self._values: Dict[str, float] = dict(values or {})
        self._metrics: Dict[str, MetricDefinition] = {}
        self._samples: Dict[str, List[MetricSample]] = {}
        self.aggregations: List[MetricAggregation] = []

    def set_value(self, metric_id: str, value: float) -> None:
        self._values[metric_id] = value

    def add_metric(self, definition: MetricDefinition) -> None:
        self._metrics[definition.id] = definition

    def add_sample(self, metric_id: str, sample: MetricSample) -> None:
        if sample.recorded_at is None:
            sample = sample.model_copy(update={"recorded_at": datetime.now(timezone.utc)})
        self._samples.setdefault(metric_id, []).append(sample)

    async def list_active_metrics(self) -> List[MetricDefinition]:
        return [m for m in self._metrics.values() if m.is_active]

    async def list_samples(self, metric_id: str, window_start: datetime, window_end: datetime) -> List[MetricSample]:
        window_start, window_end = ensure_utc(window_start), ensure_utc(window_end)
        return [s for s in self._samples.get(metric_id, []) if window_start <= s.recorded_at < window_end]

    async def record_aggregation(self, definition: MetricDefinition, aggregation: MetricAggregation) -> None:
        """Store the value resolved from a window aggregation."""
        self.aggregations.append(aggregation)
        value = resolve_metric_value(definition, aggregation)
        if value is None:
            self._values.pop(definition.id, None)
        else:
            self._values[definition.id] = value

    async def get_current_value(self, metric_id: str) -> Optional[float]:
        return self._values.get(metric_id)


class InMemoryAlertStore:
    def __init__(self, alerts: Optional[List[AlertDefinition]] = None):
        self._alerts: Dict[str, AlertDefinition] = {a.id: a for a in alerts or []}

    def add_alert(self, alert: AlertDefinition) -> None:
        self._alerts[alert.id] = alert

    async def get_alert(self, alert_id: str) -> Optional[AlertDefinition]:
        return self._alerts.get(alert_id)

    async def list_enabled_alerts(self) -> List[AlertDefinition]:
        return [a for a in self._alerts.values() if a.is_enabled]


class RecordingNotificationSink:
    """Sink collecting every event it receives."""

    def __init__(self):
        self.events: List[Any] = []

    async def notify(self, event: Any) -> None:
        self.events.append(event)


class LoggingNotificationSink:
    """Sink writing events to the structured log."""

    async def notify(self, event: Any) -> None:
        payload = event.to_dict() if hasattr(event, "to_dict") else {"payload": repr(event)}
        logger.warning("notification", **payload)
