"""
Application configuration
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "BitSwitch Rollout Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    POSTGRES_USER: str = "bitswitch"
    POSTGRES_PASSWORD: str = "bitswitch"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "bitswitch"
    # Full URL override (e.g. sqlite:///./bitswitch.db for local runs)
    DATABASE_URL_OVERRIDE: Optional[str] = None

    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 3600

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # Redis (ARQ worker queue)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DATABASE: int = 0

    # Progressive stage scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_MINUTES: int = 1  # Tick cadence, must divide 60

    # Metric aggregation
    METRIC_AGGREGATION_ENABLED: bool = True
    METRIC_AGGREGATION_INTERVAL_MINUTES: int = 5  # Also the aggregation window length

    # Alert sweep
    ALERTS_ENABLED: bool = True
    ALERT_SWEEP_INTERVAL_MINUTES: int = 5
    ALERT_SWEEP_OFFSET_MINUTES: int = 2  # Run after metric aggregation has landed

    # Store resilience
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_BREAKER_FAIL_MAX: int = 5
    STORE_BREAKER_RESET_TIMEOUT: int = 60

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
