from datetime import time
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )
    PROJECT_NAME: str = "shopfloor"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    # Database
    DATABASE_URL: str = "sqlite:///./shopfloor.db"
    DATABASE_POOL_PRE_PING: bool = True

    # Redis Configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_SSL: bool = False
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_KEY_PREFIX: str = "shopfloor:"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def REDIS_URL(self) -> str:
        """Build Redis connection URL."""
        if self.REDIS_PASSWORD:
            auth = f":{self.REDIS_PASSWORD}@"
        else:
            auth = ""

        protocol = "rediss" if self.REDIS_SSL else "redis"
        return f"{protocol}://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Celery Configuration
    CELERY_BROKER_URL: str | None = None
    CELERY_RESULT_BACKEND: str | None = None
    CELERY_TASK_TRACK_STARTED: bool = True
    CELERY_TASK_TIME_LIMIT: int = 300  # 5 minutes
    CELERY_TASK_SOFT_TIME_LIMIT: int = 240  # 4 minutes
    CELERY_WORKER_PREFETCH_MULTIPLIER: int = 1

    @computed_field  # type: ignore[prop-decorator]
    @property
    def celery_broker_url(self) -> str:
        """Get Celery broker URL (defaults to Redis)."""
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @computed_field  # type: ignore[prop-decorator]
    @property
    def celery_result_backend(self) -> str:
        """Get Celery result backend URL (defaults to Redis)."""
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL

    # Observability Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # "json" or "console"
    LOG_SQL: bool = False
    ENABLE_METRICS: bool = False
    METRICS_PORT: int = 8001

    # Machine exclusivity
    MACHINE_LOCK_BACKEND: Literal["local", "redis"] = "local"
    MACHINE_LOCK_TIMEOUT_SECONDS: float = 30.0  # lock auto-expiry
    MACHINE_LOCK_BLOCKING_TIMEOUT_SECONDS: float = 5.0

    # Attribution sentinels for automatic transitions
    SYSTEM_OPERATOR_ID: str = "SYSTEM"
    SYSTEM_DEVICE_ID: str = "AUTO_SCHEDULER"

    # Shift calendar (facility local time)
    FACILITY_UTC_OFFSET_HOURS: float = 4.0
    SHIFT_WORK_START: time = time(8, 0)
    SHIFT_WORK_END: time = time(1, 30)  # next day
    SHIFT_BREAKS: list[tuple[time, time]] = [
        (time(12, 0), time(13, 0)),  # lunch
        (time(21, 0), time(21, 30)),  # dinner
    ]
    SHIFT_NON_WORKING_WEEKDAYS: list[int] = [5, 6]  # Saturday, Sunday

    # Reconciliation loop
    RECONCILIATION_INTERVAL_SECONDS: float = 30.0
    RECONCILIATION_STARTUP_DELAY_SECONDS: float = 15.0
    RECONCILIATION_QUEUE_BATCH_SIZE: int = 10
    RECONCILIATION_AUTO_START_BATCH_SIZE: int = 5
    RECONCILIATION_OVERDUE_TOLERANCE_MINUTES: int = 120
    RECONCILIATION_NEAR_FINISH_MINUTES: int = 30
    RECONCILIATION_HIGH_PRIORITY_THRESHOLD: int = 7
    RECONCILIATION_OPTIMIZE_EVERY_MINUTES: int = 5
    RECONCILIATION_RECENT_COMPLETION_MINUTES: int = 60


settings = Settings()
