"""
Resilience patterns for store access: Circuit Breaker and Retry Logic

Usage:
    @retry_database_operation()
    def _load(self, flag_id):
        ...

    store_breaker.call(self._load, flag_id)

Circuit Breaker States:
- CLOSED: Normal operation, requests pass through
- OPEN: Store is failing, requests fail immediately
- HALF-OPEN: Testing if store recovered
"""

import logging

import structlog
from bitswitch.core.config import settings
from pybreaker import CircuitBreaker
from sqlalchemy.exc import DatabaseError, OperationalError
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)


# Config/metric/alert store circuit breaker
store_breaker = CircuitBreaker(
    fail_max=settings.STORE_BREAKER_FAIL_MAX,
    reset_timeout=settings.STORE_BREAKER_RESET_TIMEOUT,
    name="store_circuit_breaker",
)


def retry_database_operation(max_attempts: int = None):
    """
    Retry decorator for database operations
    Retries with exponential backoff on connection-level failures
    """
    return retry(
        retry=retry_if_exception_type((OperationalError, DatabaseError)),
        stop=stop_after_attempt(max_attempts or settings.STORE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )


def get_circuit_breaker_status() -> dict:
    """
    Get status of the store circuit breaker for health monitoring.
    """
    return {
        "store": {
            "state": str(store_breaker.current_state),
            "fail_count": store_breaker.fail_counter,
            "fail_max": store_breaker.fail_max,
            "reset_timeout": store_breaker.reset_timeout,
        }
    }
