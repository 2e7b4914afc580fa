"""Celery application configuration for the reconciliation worker."""

import logging
import time
from typing import Any

from celery import Celery, Task
from celery.signals import worker_process_init, worker_ready

from .config import settings

logger = logging.getLogger(__name__)


# Create Celery application
celery_app = Celery(
    "shopfloor_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["shopfloor.core.tasks.reconciliation"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution settings
    task_track_started=settings.CELERY_TASK_TRACK_STARTED,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Worker settings
    worker_prefetch_multiplier=settings.CELERY_WORKER_PREFETCH_MULTIPLIER,
    worker_max_tasks_per_child=100,
    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    # Routing
    task_routes={
        "shopfloor.core.tasks.reconciliation.*": {"queue": "scheduling"},
    },
    # Beat schedule (periodic tasks)
    beat_schedule={
        "reconciliation-tick": {
            "task": "shopfloor.core.tasks.reconciliation.run_reconciliation_tick",
            "schedule": settings.RECONCILIATION_INTERVAL_SECONDS,
        },
    },
)


class BaseTask(Task):
    """Base task logging failures, retries and successes."""

    def on_failure(
        self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any
    ) -> None:
        """Handle task failure."""
        logger.error(
            f"Task {self.name} [{task_id}] failed: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "exception": str(exc),
            },
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(
        self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any
    ) -> None:
        """Handle task retry."""
        logger.warning(
            f"Task {self.name} [{task_id}] retrying: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "exception": str(exc),
            },
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict) -> None:
        """Handle task success."""
        logger.info(
            f"Task {self.name} [{task_id}] succeeded",
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_success(retval, task_id, args, kwargs)


# Set default task base
celery_app.Task = BaseTask


_worker_started_at: float | None = None


def mark_worker_started() -> None:
    global _worker_started_at
    _worker_started_at = time.monotonic()


def worker_uptime() -> float | None:
    """Seconds since this worker process came up, or None outside a worker."""
    if _worker_started_at is None:
        return None
    return time.monotonic() - _worker_started_at


@worker_process_init.connect
def worker_process_init_handler(sender: Any = None, **kw: Any) -> None:
    """Start the uptime clock in each pool child process."""
    mark_worker_started()


@worker_ready.connect
def worker_ready_handler(sender: Any, **kw: Any) -> None:
    """Initialize logging and metrics once the worker is up."""
    from .observability import initialize_observability

    if _worker_started_at is None:
        mark_worker_started()
    initialize_observability()
    logger.info("Celery worker is ready to accept tasks")


__all__ = ["celery_app", "BaseTask", "worker_uptime"]
