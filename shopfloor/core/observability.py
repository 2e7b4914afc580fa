"""
Observability Infrastructure

Structured logging, correlation tracking and Prometheus metrics for the
scheduling engine and its background workers.
"""

import contextvars
import functools
import logging
import sys
import time
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from prometheus_client import Counter, Gauge, Histogram, start_http_server

from .config import settings

# Context variables for correlation tracking
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

F = TypeVar("F", bound=Callable[..., Any])

# Prometheus metrics
SCHEDULER_OPERATIONS = Counter(
    "shopfloor_scheduler_operations_total",
    "Total scheduling engine operations",
    ["operation_type", "status"],
)

SCHEDULER_DURATION = Histogram(
    "shopfloor_scheduler_operation_duration_seconds",
    "Scheduling engine operation duration",
    ["operation_type"],
)

STAGE_TRANSITIONS = Counter(
    "shopfloor_stage_transitions_total",
    "Stage execution status transitions",
    ["transition", "initiator"],
)

SCHEDULING_DECISIONS = Counter(
    "shopfloor_scheduling_decisions_total",
    "Machine assignment outcomes",
    ["outcome"],
)

RECONCILIATION_TICKS = Counter(
    "shopfloor_reconciliation_ticks_total",
    "Reconciliation ticks by outcome",
    ["status"],
)

RECONCILIATION_TICK_DURATION = Histogram(
    "shopfloor_reconciliation_tick_duration_seconds",
    "Reconciliation tick duration",
)

RECONCILIATION_PHASE_ERRORS = Counter(
    "shopfloor_reconciliation_phase_errors_total",
    "Errors caught inside reconciliation phases",
    ["phase"],
)

CALENDAR_FAILURES = Counter(
    "shopfloor_calendar_failures_total",
    "Shift calendar evaluations that failed open",
)

STAGES_IN_PROGRESS = Gauge(
    "shopfloor_stages_in_progress",
    "Stages observed in progress at the last tick",
)


class CorrelationIdProcessor:
    """Structlog processor to add correlation ID to all log entries."""

    def __call__(
        self, logger: Any, name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        correlation_id = correlation_id_var.get("")
        if correlation_id:
            event_dict["correlation_id"] = correlation_id
        return event_dict


def setup_structured_logging() -> None:
    """Configure structured logging with JSON output and correlation tracking."""

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        CorrelationIdProcessor(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]

    if settings.LOG_FORMAT == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=settings.ENVIRONMENT == "local")
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    if settings.LOG_SQL:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)
    else:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def setup_metrics() -> None:
    """Start the Prometheus exporter when metrics are enabled."""
    if not settings.ENABLE_METRICS:
        return

    start_http_server(settings.METRICS_PORT)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for tick or request tracking."""
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())

    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str:
    """Get current correlation ID."""
    return correlation_id_var.get("")


def monitor_operation(operation_type: str) -> Callable[[F], F]:
    """Decorator recording counters, duration and failure logs for an operation."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            start_time = time.perf_counter()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                SCHEDULER_OPERATIONS.labels(
                    operation_type=operation_type, status="error"
                ).inc()
                logger.warning(
                    "Operation failed",
                    operation=operation_type,
                    duration_seconds=time.perf_counter() - start_time,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            SCHEDULER_OPERATIONS.labels(
                operation_type=operation_type, status="success"
            ).inc()
            SCHEDULER_DURATION.labels(operation_type=operation_type).observe(
                time.perf_counter() - start_time
            )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


def initialize_observability() -> None:
    """Initialize all observability components."""
    setup_structured_logging()
    setup_metrics()

    logger = get_logger("observability")
    logger.info(
        "Observability system initialized",
        log_format=settings.LOG_FORMAT,
        metrics_enabled=settings.ENABLE_METRICS,
        metrics_port=settings.METRICS_PORT if settings.ENABLE_METRICS else None,
    )
