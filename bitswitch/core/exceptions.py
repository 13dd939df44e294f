"""
Exception types for the rollout engine.

StoreUnavailableError is the only retryable error: callers (the scheduler
tick, the alert sweep) leave the affected item for the next run.
"""

from typing import Optional


class BitSwitchError(Exception):
    """Base rollout engine error"""

    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or type(self).__name__

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class StoreUnavailableError(BitSwitchError):
    """A collaborator store could not be reached"""

    retryable = True

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        if original_error is not None:
            message = f"{message}: {original_error}"
        super().__init__(message, code="STORE_UNAVAILABLE")
        self.original_error = original_error


class InvalidRolloutConfigError(BitSwitchError):
    """Persisted rollout configuration failed validation"""

    def __init__(self, message: str, flag_id: Optional[str] = None):
        super().__init__(message, code="INVALID_ROLLOUT_CONFIG")
        self.flag_id = flag_id


class AlertNotFoundError(BitSwitchError):
    """Alert definition does not exist"""

    def __init__(self, alert_id: str):
        super().__init__(f"Alert not found: {alert_id}", code="ALERT_NOT_FOUND")
        self.alert_id = alert_id


class AlertConfigurationError(BitSwitchError):
    """Alert definition cannot be evaluated (e.g. unsupported operator)"""

    def __init__(self, message: str, alert_id: Optional[str] = None, metric_id: Optional[str] = None):
        super().__init__(message, code="ALERT_CONFIGURATION_ERROR")
        self.alert_id = alert_id
        self.metric_id = metric_id
