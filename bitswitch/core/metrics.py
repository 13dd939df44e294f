"""Prometheus metrics for flag evaluation, rollout scheduling and alerting."""

from prometheus_client import Counter, Gauge, Histogram


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Return a dummy that does nothing
        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_histogram(*args, **kwargs):
    try:
        return Histogram(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def observe(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_gauge(*args, **kwargs):
    try:
        return Gauge(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def set(self, *args, **kwargs):
                pass

        return DummyMetric()


# Flag evaluation metrics
flag_evaluations_total = _safe_counter(
    "bitswitch_flag_evaluations_total",
    "Total flag evaluations",
    ["environment", "reason"],
)

flag_evaluation_duration_seconds = _safe_histogram(
    "bitswitch_flag_evaluation_duration_seconds",
    "Duration of flag evaluations",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1],
)

# Progressive rollout metrics
rollout_stage_advances_total = _safe_counter(
    "bitswitch_rollout_stage_advances_total",
    "Progressive rollout stage advancement attempts",
    ["rollout_type", "outcome"],  # outcome: started, advanced, conflict, not_due, failed
)

rollout_current_percentage = _safe_gauge(
    "bitswitch_rollout_current_percentage",
    "Rollout percentage after the latest stage advance",
    ["flag_id"],
)

# Metric aggregation metrics
metric_aggregations_total = _safe_counter(
    "bitswitch_metric_aggregations_total",
    "Metric window aggregations",
    ["outcome"],  # outcome: recorded, empty, failed
)

# Alerting metrics
alerts_checked_total = _safe_counter(
    "bitswitch_alerts_checked_total",
    "Alert threshold checks",
    ["outcome"],  # outcome: triggered, within_threshold, disabled, config_error, no_value, failed
)

# Cron job metrics
cron_job_executions_total = _safe_counter(
    "bitswitch_cron_job_executions_total",
    "Total cron job executions",
    ["job_name", "status"],  # status: success, failure
)

cron_job_duration_seconds = _safe_histogram(
    "bitswitch_cron_job_duration_seconds",
    "Duration of cron job executions",
    ["job_name"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)

cron_job_last_run_timestamp = _safe_gauge(
    "bitswitch_cron_job_last_run_timestamp",
    "Unix timestamp of last cron job run",
    ["job_name"],
)
