"""ARQ worker running the rollout scheduler, metric aggregation and the alert sweep.

Usage:
    python -m bitswitch.worker

Cron jobs:
- advance_progressive_rollouts: every SCHEDULER_INTERVAL_MINUTES
- aggregate_metrics: every METRIC_AGGREGATION_INTERVAL_MINUTES, over the
  window that just ended
- sweep_metric_alerts: every ALERT_SWEEP_INTERVAL_MINUTES, offset by
  ALERT_SWEEP_OFFSET_MINUTES so metric aggregation lands first

Environment:
    Requires REDIS_HOST, REDIS_PORT, REDIS_PASSWORD and the database
    settings from .env.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Set

from arq import cron, run_worker
from arq.connections import RedisSettings
from bitswitch.core.config import settings
from bitswitch.core.exceptions import StoreUnavailableError
from bitswitch.core.logging import bind_job_context, configure_logging, get_logger
from bitswitch.core.metrics import cron_job_duration_seconds, cron_job_executions_total, cron_job_last_run_timestamp
from bitswitch.engine import RolloutEngine

logger = get_logger(__name__)


# ARQ Redis settings
ARQ_REDIS_SETTINGS = RedisSettings(
    host=settings.REDIS_HOST,
    port=settings.REDIS_PORT,
    password=settings.REDIS_PASSWORD,
    database=settings.REDIS_DATABASE,
)


def cron_minutes(interval: int, offset: int = 0) -> Set[int]:
    """Minutes of the hour matching ``interval`` shifted by ``offset``."""
    interval = max(1, interval)
    return {minute for minute in range(60) if minute % interval == offset % interval}


async def startup(ctx: Dict[str, Any]) -> None:
    configure_logging()
    ctx["engine"] = RolloutEngine.from_settings()
    logger.info("rollout_worker_started", environment=settings.ENVIRONMENT)


async def shutdown(ctx: Dict[str, Any]) -> None:
    logger.info("rollout_worker_stopped")


def _record_success(job_name: str, start_time: float) -> None:
    cron_job_executions_total.labels(job_name=job_name, status="success").inc()
    cron_job_last_run_timestamp.labels(job_name=job_name).set(datetime.utcnow().timestamp())
    cron_job_duration_seconds.labels(job_name=job_name).observe(time.perf_counter() - start_time)


async def advance_progressive_rollouts(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """
    ARQ cron task advancing due progressive rollouts by one stage.

    A store outage fails the whole tick; due rollouts are picked up again
    on the next run.
    """
    job_name = "advance_progressive_rollouts"
    bind_job_context(job_name)
    start_time = time.perf_counter()

    try:
        report = await ctx["engine"].run_scheduler_tick()
        _record_success(job_name, start_time)
        return report.to_dict()

    except StoreUnavailableError as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.warning("advance_progressive_rollouts_store_unavailable", error=str(e))
        return {"error": str(e), "retryable": True}

    except Exception as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.error("advance_progressive_rollouts_failed", error=str(e), exc_info=True)
        return {"error": str(e)}


async def aggregate_metrics(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """ARQ cron task folding the last window of metric samples into aggregations."""
    job_name = "aggregate_metrics"
    bind_job_context(job_name)
    start_time = time.perf_counter()

    try:
        report = await ctx["engine"].run_metric_aggregation()
        _record_success(job_name, start_time)
        return report.to_dict()

    except StoreUnavailableError as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.warning("aggregate_metrics_store_unavailable", error=str(e))
        return {"error": str(e), "retryable": True}

    except Exception as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.error("aggregate_metrics_failed", error=str(e), exc_info=True)
        return {"error": str(e)}


async def sweep_metric_alerts(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """ARQ cron task checking every enabled alert against its metric."""
    job_name = "sweep_metric_alerts"
    bind_job_context(job_name)
    start_time = time.perf_counter()

    try:
        report = await ctx["engine"].run_alert_sweep()
        _record_success(job_name, start_time)
        return {
            "checked": len(report.checked),
            "triggered": len(report.triggered),
            "no_value": len(report.no_value),
            "failed": len(report.failed),
        }

    except StoreUnavailableError as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.warning("sweep_metric_alerts_store_unavailable", error=str(e))
        return {"error": str(e), "retryable": True}

    except Exception as e:
        cron_job_executions_total.labels(job_name=job_name, status="failure").inc()
        logger.error("sweep_metric_alerts_failed", error=str(e), exc_info=True)
        return {"error": str(e)}


def build_cron_jobs() -> List:
    jobs = []
    if settings.SCHEDULER_ENABLED:
        jobs.append(
            cron(
                advance_progressive_rollouts,
                minute=cron_minutes(settings.SCHEDULER_INTERVAL_MINUTES),
                run_at_startup=True,
            )
        )
    if settings.METRIC_AGGREGATION_ENABLED:
        jobs.append(cron(aggregate_metrics, minute=cron_minutes(settings.METRIC_AGGREGATION_INTERVAL_MINUTES)))
    if settings.ALERTS_ENABLED:
        jobs.append(
            cron(
                sweep_metric_alerts,
                minute=cron_minutes(settings.ALERT_SWEEP_INTERVAL_MINUTES, settings.ALERT_SWEEP_OFFSET_MINUTES),
            )
        )
    return jobs


class WorkerSettings:
    """ARQ worker settings."""

    redis_settings = ARQ_REDIS_SETTINGS
    functions = [advance_progressive_rollouts, aggregate_metrics, sweep_metric_alerts]
    cron_jobs = build_cron_jobs()
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = timedelta(minutes=5)
    max_jobs = 3


def main():
    """Run the ARQ worker."""
    logger.info(
        "starting_rollout_worker",
        redis_host=WorkerSettings.redis_settings.host,
        redis_port=WorkerSettings.redis_settings.port,
        cron_jobs=len(WorkerSettings.cron_jobs),
    )
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
