"""
Pytest configuration and shared fixtures for the rollout engine test suite.
"""

import os

# Settings must be importable without a database or Redis. These defaults are
# only applied when the variables are not already set by the caller/CI.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite://")
os.environ.setdefault("REDIS_PASSWORD", "test")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from bitswitch.services.stores import (  # noqa: E402
    InMemoryAlertStore,
    InMemoryConfigStore,
    InMemoryMetricStore,
    RecordingNotificationSink,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def config_store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def metric_store() -> InMemoryMetricStore:
    return InMemoryMetricStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def fixed_bucket(monkeypatch):
    """Pin every identity to one bucket, e.g. ``fixed_bucket(2500)``."""

    def _pin(value: int):
        monkeypatch.setattr("bitswitch.services.hashing.bucket", lambda *args, **kwargs: value)
        monkeypatch.setattr("bitswitch.services.evaluation_service.bucket", lambda *args, **kwargs: value)

    return _pin
