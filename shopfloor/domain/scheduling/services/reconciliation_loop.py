"""
Reconciliation Loop

The periodic control loop that keeps stage executions consistent with the
shift calendar and machine availability. Each tick reads fresh state and
runs five isolated phases:

1. auto-complete overdue stages (always)
2. auto-pause running stages outside working hours
3. during working hours: resume system-paused stages, drain the queue,
   auto-start ready stages
4. follow up recently completed stages (always)
5. optimize queues every few minutes during working hours

A failure inside one stage or one phase is logged and counted but never
aborts the tick.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ....core.observability import (
    RECONCILIATION_PHASE_ERRORS,
    RECONCILIATION_TICK_DURATION,
    RECONCILIATION_TICKS,
    STAGES_IN_PROGRESS,
    get_logger,
    set_correlation_id,
)
from ...shared.base import utcnow
from ...shared.exceptions import NoEligibleMachineError
from ..entities.stage_execution import StageExecution
from ..repositories.persistence_gateway import ProductionGateway
from ..value_objects.attribution import SYSTEM_DEVICE_ID, SYSTEM_OPERATOR_ID, Attribution
from ..value_objects.shift_calendar import ShiftCalendar
from .scheduling_engine import SchedulingEngine
from .stage_state_machine import ContinuationPolicy, StageStateMachine

logger = get_logger(__name__)


class ReconciliationOptions:
    """Timing and throttling parameters for the loop."""

    def __init__(
        self,
        interval_seconds: float = 30.0,
        startup_delay_seconds: float = 15.0,
        queue_batch_size: int = 10,
        auto_start_batch_size: int = 5,
        overdue_tolerance: timedelta = timedelta(hours=2),
        optimize_every_minutes: int = 5,
        recent_completion_window: timedelta = timedelta(hours=1),
    ) -> None:
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.queue_batch_size = queue_batch_size
        self.auto_start_batch_size = auto_start_batch_size
        self.overdue_tolerance = overdue_tolerance
        self.optimize_every_minutes = optimize_every_minutes
        self.recent_completion_window = recent_completion_window

    @classmethod
    def from_settings(cls, settings) -> "ReconciliationOptions":
        return cls(
            interval_seconds=settings.RECONCILIATION_INTERVAL_SECONDS,
            startup_delay_seconds=settings.RECONCILIATION_STARTUP_DELAY_SECONDS,
            queue_batch_size=settings.RECONCILIATION_QUEUE_BATCH_SIZE,
            auto_start_batch_size=settings.RECONCILIATION_AUTO_START_BATCH_SIZE,
            overdue_tolerance=timedelta(
                minutes=settings.RECONCILIATION_OVERDUE_TOLERANCE_MINUTES
            ),
            optimize_every_minutes=settings.RECONCILIATION_OPTIMIZE_EVERY_MINUTES,
            recent_completion_window=timedelta(
                minutes=settings.RECONCILIATION_RECENT_COMPLETION_MINUTES
            ),
        )


@dataclass
class TickReport:
    """What one tick did."""

    started_at: datetime
    working_time: bool
    correlation_id: str
    completed: int = 0
    paused: int = 0
    resumed: int = 0
    scheduled: int = 0
    started: int = 0
    followed_up: int = 0
    queue_optimized: bool = False
    errors: dict[str, int] = field(default_factory=dict)

    def record_error(self, phase: str) -> None:
        self.errors[phase] = self.errors.get(phase, 0) + 1

    @property
    def total_errors(self) -> int:
        return sum(self.errors.values())

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "working_time": self.working_time,
            "correlation_id": self.correlation_id,
            "completed": self.completed,
            "paused": self.paused,
            "resumed": self.resumed,
            "scheduled": self.scheduled,
            "started": self.started,
            "followed_up": self.followed_up,
            "queue_optimized": self.queue_optimized,
            "errors": dict(self.errors),
        }


def format_overdue(overdue: timedelta) -> str:
    minutes = int(overdue.total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


class ReconciliationLoop:
    """
    Periodic driver of the scheduling engine.

    ``run_tick`` is synchronous and idempotent with respect to unchanged
    state. ``run_forever`` drives it from asyncio, running each tick on the
    default executor.
    """

    def __init__(
        self,
        gateway: ProductionGateway,
        engine: SchedulingEngine,
        state_machine: StageStateMachine,
        calendar: ShiftCalendar,
        policy: ContinuationPolicy | None = None,
        options: ReconciliationOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
        operator_id: str = SYSTEM_OPERATOR_ID,
        device_id: str = SYSTEM_DEVICE_ID,
    ) -> None:
        self._gateway = gateway
        self._engine = engine
        self._state_machine = state_machine
        self._calendar = calendar
        self._policy = policy or ContinuationPolicy()
        self._options = options or ReconciliationOptions()
        self._clock = clock
        self._operator_id = operator_id
        self._device_id = device_id

        self._stop_event = asyncio.Event()
        self._event_loop: asyncio.AbstractEventLoop | None = None

    @property
    def options(self) -> ReconciliationOptions:
        return self._options

    @property
    def calendar(self) -> ShiftCalendar:
        return self._calendar

    def is_working_time(self, now: datetime | None = None) -> bool:
        return self._calendar.is_working_at(now or self._clock())

    def _system(self, reason: str) -> Attribution:
        return Attribution.system(
            reason, operator_id=self._operator_id, device_id=self._device_id
        )

    # Tick

    def run_tick(self, now: datetime | None = None) -> TickReport:
        """
        Run one reconciliation pass.

        Args:
            now: Tick time as naive UTC (defaults to the clock)

        Returns:
            TickReport with counters and per-phase errors
        """
        now = now or self._clock()
        correlation_id = set_correlation_id()
        tick_start = time.perf_counter()

        working = self._calendar.is_working_at(now)
        report = TickReport(
            started_at=now, working_time=working, correlation_id=correlation_id
        )
        logger.debug("Reconciliation tick started", working_time=working)

        self._run_phase("auto_complete", self._auto_complete_overdue, now, report)
        if not working:
            self._run_phase("auto_pause", self._pause_outside_hours, now, report)
        else:
            self._run_phase("resume", self._resume_system_paused, now, report)
            self._run_phase("drain_queue", self._drain_queue, now, report)
            self._run_phase("auto_start", self._auto_start_ready, now, report)
        self._run_phase("follow_up", self._follow_up_completed, now, report)
        if working:
            self._run_phase("optimize", self._maybe_optimize, now, report)

        RECONCILIATION_TICK_DURATION.observe(time.perf_counter() - tick_start)
        RECONCILIATION_TICKS.labels(
            status="partial" if report.total_errors else "success"
        ).inc()
        logger.info("Reconciliation tick finished", **report.to_dict())
        return report

    def _run_phase(
        self,
        name: str,
        phase: Callable[[datetime, TickReport], None],
        now: datetime,
        report: TickReport,
    ) -> None:
        try:
            phase(now, report)
        except Exception as e:
            report.record_error(name)
            RECONCILIATION_PHASE_ERRORS.labels(phase=name).inc()
            logger.error(
                "Reconciliation phase failed",
                phase=name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def _for_stage(
        self,
        phase: str,
        stage: StageExecution,
        action: Callable[[], None],
        report: TickReport,
    ) -> None:
        try:
            action()
        except Exception as e:
            report.record_error(phase)
            RECONCILIATION_PHASE_ERRORS.labels(phase=phase).inc()
            logger.warning(
                "Stage operation failed",
                phase=phase,
                stage_id=str(stage.id),
                error=str(e),
                error_type=type(e).__name__,
            )

    # Phases

    def _auto_complete_overdue(self, now: datetime, report: TickReport) -> None:
        running = self._gateway.get_in_progress_stages()
        STAGES_IN_PROGRESS.set(len(running))
        tolerance = self._options.overdue_tolerance

        for stage in running:
            if not stage.is_overdue(now, tolerance):
                continue
            overdue = stage.overdue_by(now)

            def complete(stage=stage, overdue=overdue):
                self._state_machine.complete(
                    stage.id,
                    self._system(
                        f"Auto-completed: overdue by {format_overdue(overdue)}"
                    ),
                    now,
                )
                report.completed += 1

            self._for_stage("auto_complete", stage, complete, report)

    def _pause_outside_hours(self, now: datetime, report: TickReport) -> None:
        for stage in self._gateway.get_in_progress_stages():
            if self._policy.allows(stage, now):
                continue

            def pause(stage=stage):
                self._state_machine.pause(
                    stage.id,
                    self._system("Auto-paused outside working hours"),
                    now,
                    by_system=True,
                )
                report.paused += 1

            self._for_stage("auto_pause", stage, pause, report)

    def _resume_system_paused(self, now: datetime, report: TickReport) -> None:
        for stage in self._gateway.get_paused_stages(by_system=True):
            if not self._state_machine.is_machine_free(stage.machine_id, stage.id):
                continue

            def resume(stage=stage):
                self._state_machine.resume(
                    stage.id, self._system("Auto-resumed in working hours"), now
                )
                report.resumed += 1

            self._for_stage("resume", stage, resume, report)

    def _drain_queue(self, now: datetime, report: TickReport) -> None:
        for stage in self._engine.ordered_queue(limit=self._options.queue_batch_size):

            def schedule(stage=stage):
                try:
                    self._engine.schedule_stage_execution(stage.id, now)
                except NoEligibleMachineError:
                    return
                report.scheduled += 1

            self._for_stage("drain_queue", stage, schedule, report)

    def _auto_start_ready(self, now: datetime, report: TickReport) -> None:
        for stage in self._engine.ready_stages(limit=self._options.auto_start_batch_size):

            def start(stage=stage):
                if stage.machine_id is None:
                    try:
                        self._engine.schedule_stage_execution(stage.id, now)
                    except NoEligibleMachineError:
                        return
                    report.scheduled += 1
                if not self._engine.can_start_stage(stage.id):
                    return
                if self._engine.start_pending_stage(stage.id, now):
                    report.started += 1

            self._for_stage("auto_start", stage, start, report)

    def _follow_up_completed(self, now: datetime, report: TickReport) -> None:
        since = now - self._options.recent_completion_window
        for stage in self._gateway.get_recently_completed_unprocessed(since):

            def follow_up(stage=stage):
                self._engine.handle_stage_completion(stage.id, now)
                report.followed_up += 1

            self._for_stage("follow_up", stage, follow_up, report)

    def _maybe_optimize(self, now: datetime, report: TickReport) -> None:
        local_now = self._calendar.to_local(now)
        if local_now.minute % self._options.optimize_every_minutes != 0:
            return
        self._engine.optimize_queue(now)
        report.queue_optimized = True

    # Driver

    async def run_forever(self) -> None:
        """
        Run ticks until ``stop`` is called.

        Waits out the startup delay, then runs a tick on the default
        executor every ``interval_seconds``. Stopping during a wait returns
        immediately; a tick already running is allowed to finish.
        """
        self._event_loop = asyncio.get_running_loop()
        logger.info(
            "Reconciliation loop starting",
            interval_seconds=self._options.interval_seconds,
            startup_delay_seconds=self._options.startup_delay_seconds,
        )

        if await self._wait(self._options.startup_delay_seconds):
            logger.info("Reconciliation loop stopped before first tick")
            return

        while not self._stop_event.is_set():
            try:
                await self._event_loop.run_in_executor(None, self.run_tick)
            except Exception as e:
                RECONCILIATION_TICKS.labels(status="failed").inc()
                logger.error(
                    "Reconciliation tick crashed", error=str(e), exc_info=True
                )
            if await self._wait(self._options.interval_seconds):
                break

        logger.info("Reconciliation loop stopped")

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def stop(self) -> None:
        """Request the loop to stop; safe to call from any thread."""
        loop = self._event_loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self._stop_event.set)
        else:
            self._stop_event.set()

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()
