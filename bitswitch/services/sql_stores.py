"""SQLAlchemy-backed store adapters.

Reference persistence for the engine's store interfaces. Each operation
runs in its own short-lived session, retried with exponential backoff on
connection-level errors, behind the shared store circuit breaker. Exhausted
retries, an open breaker and other database errors surface as
``StoreUnavailableError``.

The stage cursor is advanced with a conditional UPDATE on
``(flag_id, current_stage)``, so only one of several concurrent schedulers
can move a rollout forward from a given stage.

Usage:
    from bitswitch.services.sql_stores import SqlConfigStore

    store = SqlConfigStore()
    config = await store.get_rollout_config("flag-1")
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from bitswitch.core.database import get_session_factory, transaction
from bitswitch.core.exceptions import InvalidRolloutConfigError, StoreUnavailableError
from bitswitch.core.logging import get_logger
from bitswitch.core.resilience import retry_database_operation, store_breaker
from bitswitch.models.alert import Alert
from bitswitch.models.flag import Flag, FlagRollout
from bitswitch.models.metric import Metric, MetricAggregationRecord, MetricEvent
from bitswitch.schemas.alert import AlertDefinition
from bitswitch.schemas.evaluation import Environment
from bitswitch.schemas.metric import MetricAggregation, MetricDefinition, MetricSample
from bitswitch.schemas.rollout import CamelModel, CurrentStage, RolloutConfig, RolloutType, parse_rollout_config
from bitswitch.services.evaluation_service import FlagDefinition
from bitswitch.services.metric_aggregation import resolve_metric_value
from bitswitch.services.stage_scheduler import is_due, is_progressive, is_terminal
from pybreaker import CircuitBreakerError
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

logger = get_logger(__name__)

_PROGRESSIVE_TYPES = (RolloutType.PROGRESSIVE_ROLLOUT.value, RolloutType.CUSTOM_PROGRESSIVE_ROLLOUT.value)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC timestamps stored in the database."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _guarded(operation: str, fn: Callable, *args):
    """Run a sync store call behind the circuit breaker."""
    try:
        return store_breaker.call(fn, *args)
    except CircuitBreakerError as e:
        logger.warning("store_circuit_open", operation=operation)
        raise StoreUnavailableError(f"Store circuit breaker open during {operation}", original_error=e) from e
    except SQLAlchemyError as e:
        logger.error("store_operation_failed", operation=operation, error=str(e))
        raise StoreUnavailableError(f"Store operation {operation} failed", original_error=e) from e


def _cursor_columns(config: RolloutConfig) -> Dict[str, Any]:
    """Indexed columns mirrored from a rollout config."""
    if is_progressive(config):
        return {
            "rollout_type": config.type,
            "current_stage": config.current_stage.stage,
            "next_progress_at": _to_db_time(config.current_stage.next_progress_at),
            "is_terminal": is_terminal(config),
        }
    return {
        "rollout_type": config.type,
        "current_stage": None,
        "next_progress_at": None,
        "is_terminal": True,
    }


class SqlConfigStore:
    """Flags and rollout configs in the ``flags``/``flag_rollouts`` tables."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    async def get_flag(
        self, org_slug: Optional[str], flag_key: str, environment: Environment
    ) -> Optional[FlagDefinition]:
        return _guarded("get_flag", self._load_flag, org_slug, flag_key, Environment(environment).value)

    async def get_rollout_config(self, flag_id: str) -> Optional[RolloutConfig]:
        data = _guarded("get_rollout_config", self._load_rollout, flag_id)
        if data is None:
            return None
        return parse_rollout_config(data, flag_id=flag_id)

    async def cas_advance_stage(self, flag_id: str, expected_stage: int, new_stage: CurrentStage) -> bool:
        data = _guarded("cas_advance_stage", self._load_rollout, flag_id)
        if data is None:
            return False

        data["currentStage"] = new_stage.to_wire()
        config = parse_rollout_config(data, flag_id=flag_id)
        if not is_progressive(config):
            return False

        applied = _guarded(
            "cas_advance_stage",
            self._compare_and_set,
            flag_id,
            expected_stage,
            config.to_wire(),
            _cursor_columns(config),
        )
        if not applied:
            logger.debug("cas_advance_stage_conflict", flag_id=flag_id, expected_stage=expected_stage)
        return applied

    async def list_due_progressive_configs(self, now: datetime) -> List[str]:
        candidates = _guarded("list_due_progressive_configs", self._load_due_candidates, _to_db_time(now))
        due = []
        for flag_id, data in candidates:
            try:
                config = parse_rollout_config(data, flag_id=flag_id)
            except InvalidRolloutConfigError as e:
                logger.warning("invalid_rollout_config_skipped", flag_id=flag_id, error=str(e))
                continue
            if is_due(config, now):
                due.append(flag_id)
        return due

    async def save_rollout_config(self, flag_id: str, rollout: Union[CamelModel, Dict[str, Any]]) -> RolloutConfig:
        """Validate and store a flag's rollout config, replacing any previous one."""
        config = parse_rollout_config(rollout, flag_id=flag_id)
        _guarded("save_rollout_config", self._upsert_rollout, flag_id, config.to_wire(), _cursor_columns(config))
        logger.info("rollout_config_saved", flag_id=flag_id, rollout_type=config.type)
        return config

    @retry_database_operation()
    def _load_flag(self, org_slug: Optional[str], flag_key: str, environment: str) -> Optional[FlagDefinition]:
        db = self._session_factory()
        try:
            query = db.query(Flag).filter(Flag.key == flag_key, Flag.environment == environment)
            if org_slug is None:
                query = query.filter(Flag.org_slug.is_(None))
            else:
                query = query.filter(Flag.org_slug == org_slug)
            row = query.first()
            return row.to_definition() if row is not None else None
        finally:
            db.close()

    @retry_database_operation()
    def _load_rollout(self, flag_id: str) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            row = db.query(FlagRollout).filter(FlagRollout.flag_id == flag_id).first()
            return dict(row.config) if row is not None else None
        finally:
            db.close()

    @retry_database_operation()
    def _load_due_candidates(self, now: datetime) -> List[Tuple[str, Dict[str, Any]]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(FlagRollout)
                .filter(
                    FlagRollout.rollout_type.in_(_PROGRESSIVE_TYPES),
                    FlagRollout.is_terminal.is_(False),
                    or_(FlagRollout.next_progress_at.is_(None), FlagRollout.next_progress_at <= now),
                )
                .order_by(FlagRollout.flag_id)
                .all()
            )
            return [(row.flag_id, dict(row.config)) for row in rows]
        finally:
            db.close()

    @retry_database_operation()
    def _compare_and_set(
        self, flag_id: str, expected_stage: int, config: Dict[str, Any], columns: Dict[str, Any]
    ) -> bool:
        db = self._session_factory()
        try:
            with transaction(db):
                updated = (
                    db.query(FlagRollout)
                    .filter(FlagRollout.flag_id == flag_id, FlagRollout.current_stage == expected_stage)
                    .update(
                        {"config": config, "updated_at": datetime.utcnow(), **columns},
                        synchronize_session=False,
                    )
                )
            return updated == 1
        finally:
            db.close()

    @retry_database_operation()
    def _upsert_rollout(self, flag_id: str, config: Dict[str, Any], columns: Dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            with transaction(db):
                row = db.query(FlagRollout).filter(FlagRollout.flag_id == flag_id).first()
                if row is None:
                    row = FlagRollout(flag_id=flag_id)
                    db.add(row)
                row.config = config
                for name, value in columns.items():
                    setattr(row, name, value)
        finally:
            db.close()


class SqlMetricStore:
    """Samples from ``metric_events``, current values from the latest ``metric_aggregations`` window."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    async def get_current_value(self, metric_id: str) -> Optional[float]:
        loaded = _guarded("get_current_value", self._load_latest, metric_id)
        if loaded is None:
            return None
        definition, aggregation = loaded
        return resolve_metric_value(definition, aggregation)

    async def list_active_metrics(self) -> List[MetricDefinition]:
        return _guarded("list_active_metrics", self._load_active_metrics)

    async def list_samples(self, metric_id: str, window_start: datetime, window_end: datetime) -> List[MetricSample]:
        return _guarded(
            "list_samples", self._load_samples, metric_id, _to_db_time(window_start), _to_db_time(window_end)
        )

    async def record_aggregation(self, definition: MetricDefinition, aggregation: MetricAggregation) -> None:
        _guarded("record_aggregation", self._insert_aggregation, definition.id, aggregation)

    @retry_database_operation()
    def _load_latest(self, metric_id: str):
        db = self._session_factory()
        try:
            metric = db.query(Metric).filter(Metric.id == metric_id).first()
            if metric is None:
                return None
            record = (
                db.query(MetricAggregationRecord)
                .filter(MetricAggregationRecord.metric_id == metric_id)
                .order_by(MetricAggregationRecord.window_end.desc())
                .first()
            )
            return metric.to_schema(), record.to_schema() if record is not None else None
        finally:
            db.close()

    @retry_database_operation()
    def _load_active_metrics(self) -> List[MetricDefinition]:
        db = self._session_factory()
        try:
            rows = db.query(Metric).filter(Metric.is_active.is_(True)).order_by(Metric.id).all()
            return [row.to_schema() for row in rows]
        finally:
            db.close()

    @retry_database_operation()
    def _load_samples(self, metric_id: str, window_start: datetime, window_end: datetime) -> List[MetricSample]:
        db = self._session_factory()
        try:
            metric = db.query(Metric).filter(Metric.id == metric_id).first()
            if metric is None:
                return []
            rows = (
                db.query(MetricEvent)
                .filter(
                    MetricEvent.metric_id == metric_id,
                    MetricEvent.recorded_at >= window_start,
                    MetricEvent.recorded_at < window_end,
                )
                .order_by(MetricEvent.recorded_at)
                .all()
            )
            return [row.to_schema(metric.key) for row in rows]
        finally:
            db.close()

    @retry_database_operation()
    def _insert_aggregation(self, metric_id: str, aggregation: MetricAggregation) -> None:
        db = self._session_factory()
        try:
            with transaction(db):
                record = MetricAggregationRecord.from_schema(metric_id, aggregation)
                record.window_start = _to_db_time(aggregation.window_start)
                record.window_end = _to_db_time(aggregation.window_end)
                db.add(record)
        finally:
            db.close()


class SqlAlertStore:
    """Alert definitions from the ``alert_definitions`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    async def get_alert(self, alert_id: str) -> Optional[AlertDefinition]:
        return _guarded("get_alert", self._load_alert, alert_id)

    async def list_enabled_alerts(self) -> List[AlertDefinition]:
        return _guarded("list_enabled_alerts", self._load_enabled)

    @retry_database_operation()
    def _load_alert(self, alert_id: str) -> Optional[AlertDefinition]:
        db = self._session_factory()
        try:
            row = db.query(Alert).filter(Alert.id == alert_id).first()
            return row.to_schema() if row is not None else None
        finally:
            db.close()

    @retry_database_operation()
    def _load_enabled(self) -> List[AlertDefinition]:
        db = self._session_factory()
        try:
            rows = db.query(Alert).filter(Alert.is_enabled.is_(True)).order_by(Alert.id).all()
            return [row.to_schema() for row in rows]
        finally:
            db.close()
