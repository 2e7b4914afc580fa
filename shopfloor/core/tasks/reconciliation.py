"""
Celery tasks driving the reconciliation loop.

Beat fires ``run_reconciliation_tick`` on a fixed interval. Ticks are
skipped until the worker has been up for the startup delay. A non-blocking
Redis lock makes sure only one worker runs a tick at a time; a tick that
finds the lock held is skipped rather than queued behind it. Queue
optimisation runs inside the tick; ``optimize_queue`` is for manual runs.
"""

import logging
from typing import Any

import redis
from redis.exceptions import LockError

from ..celery_app import BaseTask, celery_app, worker_uptime
from ..config import settings

logger = logging.getLogger(__name__)

TICK_LOCK_NAME = "reconciliation:tick"


def _redis_client() -> redis.Redis:
    return redis.Redis.from_url(settings.REDIS_URL)


def _services():
    from ...infrastructure.service_dependencies import get_scheduling_services

    return get_scheduling_services()


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="shopfloor.core.tasks.reconciliation.run_reconciliation_tick",
    queue="scheduling",
)
def run_reconciliation_tick(self) -> dict[str, Any]:
    """
    Run one reconciliation tick unless another worker is already running one.

    Returns:
        The tick report as a dict, or ``{"status": "skipped"}``
    """
    uptime = worker_uptime()
    if uptime is not None and uptime < settings.RECONCILIATION_STARTUP_DELAY_SECONDS:
        logger.info(
            "Worker still in startup delay, skipping reconciliation tick",
            extra={"uptime_seconds": round(uptime, 1)},
        )
        return {"status": "skipped", "reason": "startup_delay"}

    lock = _redis_client().lock(
        f"{settings.REDIS_KEY_PREFIX}{TICK_LOCK_NAME}",
        timeout=max(settings.CELERY_TASK_TIME_LIMIT, 1),
        blocking=False,
    )
    if not lock.acquire():
        logger.info("Reconciliation tick already running, skipping")
        return {"status": "skipped"}

    try:
        report = _services().loop.run_tick()
        result = report.to_dict()
        result["status"] = "completed"
        return result
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("Reconciliation tick lock expired before release")


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="shopfloor.core.tasks.reconciliation.optimize_queue",
    queue="scheduling",
)
def optimize_queue(self) -> dict[str, Any]:
    """Renumber queue positions on every machine during working hours."""
    services = _services()
    if not services.loop.is_working_time():
        logger.info("Outside working hours, skipping queue optimization")
        return {"status": "skipped", "reason": "outside_working_hours"}

    if self.request.id:
        self.update_state(state="PROGRESS", meta={"status": "Optimizing queue"})

    ordered = services.engine.optimize_queue()
    return {
        "status": "completed",
        "machines": len(ordered),
        "queued_stages": sum(len(ids) for ids in ordered.values()),
    }


__all__ = ["run_reconciliation_tick", "optimize_queue"]
