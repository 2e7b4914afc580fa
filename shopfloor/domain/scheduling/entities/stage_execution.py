"""StageExecution entity: one route operation applied to one sub-batch."""

from datetime import datetime, timedelta
from uuid import UUID

from pydantic import Field

from ...shared.base import Entity, utcnow
from ...shared.exceptions import BusinessRuleViolation, InvalidStatusTransitionError
from ..value_objects.attribution import Attribution
from ..value_objects.enums import StageEventType, StageExecutionStatus
from .stage_event import StageEvent

DEFAULT_OVERDUE_TOLERANCE = timedelta(hours=2)
DEFAULT_NEAR_FINISH = timedelta(minutes=30)
DEFAULT_HIGH_PRIORITY_THRESHOLD = 7


class StageExecution(Entity):
    """
    Stage execution entity.

    Instantiates one route stage against one sub-batch. Route and batch
    facts needed for planning (order, machine type, norm and setup hours,
    quantity, batch creation time) are copied in when the stage is
    planned; details are immutable once referenced, so the copies never
    go stale.

    Status changes happen only through the transition methods below, each
    of which returns the ``StageEvent`` describing it. Cross-stage guards
    (predecessors, machine exclusivity) are enforced by
    ``StageStateMachine``.
    """

    # Ownership
    batch_id: UUID
    sub_batch_id: UUID
    detail_id: UUID

    # Route stage snapshot
    route_stage_id: UUID
    stage_order: int = Field(ge=1)
    stage_name: str = ""
    machine_type_id: UUID
    norm_time_hours: float = Field(ge=0)
    setup_time_hours: float = Field(ge=0)
    quantity: int = Field(gt=0)
    batch_created_at: datetime

    status: StageExecutionStatus = Field(default=StageExecutionStatus.PENDING)
    machine_id: UUID | None = None

    # Setup linkage
    is_setup: bool = False
    setup_stage_id: UUID | None = None
    main_stage_id: UUID | None = None

    # Priority and queueing
    priority: int = Field(default=0, ge=0)
    is_critical: bool = False
    queue_position: int | None = Field(default=None, ge=1)
    queued_at: datetime | None = None

    # Execution timeline
    start_time: datetime | None = None
    end_time: datetime | None = None
    pause_time: datetime | None = None
    resume_time: datetime | None = None
    paused_seconds: float = Field(default=0.0, ge=0)
    paused_by_system: bool = False

    # Attribution of the last transition
    operator_id: str | None = None
    device_id: str | None = None
    reason_note: str | None = None
    status_changed_at: datetime = Field(default_factory=utcnow)

    # Scheduler bookkeeping
    start_attempts: int = Field(default=0, ge=0)
    last_error_message: str | None = None
    is_processed_by_scheduler: bool = False
    completion_percentage: float = Field(default=0.0, ge=0, le=100)
    version: int = Field(default=0, ge=0)

    def is_valid(self) -> bool:
        """Validate business rules."""
        if self.status.holds_machine and self.machine_id is None:
            return False
        if self.end_time and self.start_time and self.end_time < self.start_time:
            return False
        if self.is_setup and self.main_stage_id is None:
            return False
        return True

    # Planning and timing

    @property
    def planned_duration(self) -> timedelta:
        """Setup hours for a setup stage, otherwise norm hours times quantity."""
        if self.is_setup:
            return timedelta(hours=self.setup_time_hours)
        return timedelta(hours=self.norm_time_hours * self.quantity)

    def elapsed(self, now: datetime) -> timedelta | None:
        """Wall-clock time since start, or None if never started."""
        if self.start_time is None:
            return None
        return now - self.start_time

    def remaining(self, now: datetime) -> timedelta:
        """Planned duration minus elapsed time (planned duration if not started)."""
        return self.planned_duration - (self.elapsed(now) or timedelta(0))

    def overdue_by(self, now: datetime) -> timedelta | None:
        """Elapsed time beyond the planned duration (negative while on time)."""
        elapsed = self.elapsed(now)
        if elapsed is None:
            return None
        return elapsed - self.planned_duration

    def is_overdue(
        self, now: datetime, tolerance: timedelta = DEFAULT_OVERDUE_TOLERANCE
    ) -> bool:
        """True when the stage ran past its plan by strictly more than ``tolerance``."""
        overdue = self.overdue_by(now)
        return overdue is not None and overdue > tolerance

    def actual_working_time(self, now: datetime) -> timedelta | None:
        """Time spent in progress, excluding pauses."""
        if self.start_time is None:
            return None
        if self.end_time is not None:
            until = self.end_time
        elif self.status == StageExecutionStatus.PAUSED and self.pause_time:
            until = self.pause_time
        else:
            until = now
        working = until - self.start_time - timedelta(seconds=self.paused_seconds)
        return max(working, timedelta(0))

    def time_deviation(self, now: datetime) -> timedelta | None:
        """Actual working time minus planned duration."""
        working = self.actual_working_time(now)
        if working is None:
            return None
        return working - self.planned_duration

    def progress_percentage(self, now: datetime) -> float:
        """Progress estimate from working time, capped at 100."""
        if self.status == StageExecutionStatus.COMPLETED:
            return 100.0
        working = self.actual_working_time(now)
        if working is None:
            return 0.0
        planned_seconds = self.planned_duration.total_seconds()
        if planned_seconds <= 0:
            return 100.0
        return min(100.0, working.total_seconds() / planned_seconds * 100)

    def should_continue_outside_working_hours(
        self,
        now: datetime,
        high_priority_threshold: int = DEFAULT_HIGH_PRIORITY_THRESHOLD,
        near_finish: timedelta = DEFAULT_NEAR_FINISH,
    ) -> bool:
        """
        Check if the stage may keep running outside working hours.

        Changeovers, high-priority and critical work, and work that is
        nearly finished run through breaks and nights.
        """
        return (
            self.is_setup
            or self.priority > high_priority_threshold
            or self.is_critical
            or self.remaining(now) <= near_finish
        )

    @property
    def queue_sort_key(self) -> tuple[int, datetime, datetime, str]:
        """Priority desc, batch creation asc, stage creation asc, id."""
        return (-self.priority, self.batch_created_at, self.created_at, str(self.id))

    # Transitions

    def enqueue(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Move a pending stage into the queue."""
        self._ensure_transition(StageExecutionStatus.IN_QUEUE)
        if self.machine_id is not None and not self.is_setup:
            raise BusinessRuleViolation(
                "ALREADY_ASSIGNED",
                f"Stage {self.id} already has machine {self.machine_id}",
            )
        self.queued_at = now
        return self._change_status(
            StageExecutionStatus.IN_QUEUE, StageEventType.QUEUED, attribution, now
        )

    def assign_machine(
        self, machine_id: UUID, attribution: Attribution, now: datetime
    ) -> StageEvent:
        """Bind a machine to a stage that has not started yet."""
        if not self.status.is_schedulable:
            raise BusinessRuleViolation(
                "ASSIGNMENT_NOT_ALLOWED",
                f"Cannot assign machine to stage in status {self.status.value}",
            )
        previous_machine = self.machine_id
        self.machine_id = machine_id
        self.operator_id = attribution.operator_id
        self.device_id = attribution.device_id
        self.reason_note = attribution.reason_note
        self.mark_updated(now)
        return self._event(
            StageEventType.REASSIGNED if previous_machine else StageEventType.ASSIGNED,
            attribution,
            now,
            previous_status=self.status,
            previous_machine_id=previous_machine,
        )

    def start(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Start a pending or queued stage on its assigned machine."""
        if not self.status.is_schedulable:
            raise InvalidStatusTransitionError(
                self.id, self.status.value, StageExecutionStatus.IN_PROGRESS.value
            )
        if self.machine_id is None:
            raise BusinessRuleViolation(
                "MACHINE_NOT_ASSIGNED", f"Stage {self.id} has no assigned machine"
            )
        self.start_time = now
        self.end_time = None
        self.pause_time = None
        self.resume_time = None
        self.paused_seconds = 0.0
        self.paused_by_system = False
        self.start_attempts += 1
        self.last_error_message = None
        self.queue_position = None
        return self._change_status(
            StageExecutionStatus.IN_PROGRESS, StageEventType.STARTED, attribution, now
        )

    def record_failed_start(self, message: str, now: datetime) -> None:
        """Remember a refused start attempt."""
        self.start_attempts += 1
        self.last_error_message = message
        self.mark_updated(now)

    def pause(
        self, attribution: Attribution, now: datetime, by_system: bool = False
    ) -> StageEvent:
        """Pause a running stage, releasing its machine."""
        if self.status != StageExecutionStatus.IN_PROGRESS:
            raise InvalidStatusTransitionError(
                self.id, self.status.value, StageExecutionStatus.PAUSED.value
            )
        self.pause_time = now
        self.paused_by_system = by_system
        return self._change_status(
            StageExecutionStatus.PAUSED, StageEventType.PAUSED, attribution, now
        )

    def resume(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Resume a paused stage on its machine."""
        if self.status != StageExecutionStatus.PAUSED:
            raise InvalidStatusTransitionError(
                self.id, self.status.value, StageExecutionStatus.IN_PROGRESS.value
            )
        self._accumulate_pause(now)
        self.resume_time = now
        self.paused_by_system = False
        return self._change_status(
            StageExecutionStatus.IN_PROGRESS, StageEventType.RESUMED, attribution, now
        )

    def complete(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Finish a running or paused stage."""
        self._ensure_transition(StageExecutionStatus.COMPLETED)
        if self.status == StageExecutionStatus.PAUSED:
            self._accumulate_pause(now)
        self.end_time = now
        self.paused_by_system = False
        self.completion_percentage = 100.0
        self.is_processed_by_scheduler = False
        return self._change_status(
            StageExecutionStatus.COMPLETED, StageEventType.COMPLETED, attribution, now
        )

    def cancel(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Administratively cancel a non-terminal stage."""
        self._ensure_transition(StageExecutionStatus.CANCELLED)
        if self.status in {StageExecutionStatus.IN_PROGRESS, StageExecutionStatus.PAUSED}:
            self.end_time = now
        self.paused_by_system = False
        self.queue_position = None
        self.is_processed_by_scheduler = True
        return self._change_status(
            StageExecutionStatus.CANCELLED, StageEventType.CANCELLED, attribution, now
        )

    def fail(self, attribution: Attribution, now: datetime, message: str) -> StageEvent:
        """Mark the stage as faulted; it must be reset manually."""
        self._ensure_transition(StageExecutionStatus.ERROR)
        self.last_error_message = message
        self.paused_by_system = False
        return self._change_status(
            StageExecutionStatus.ERROR, StageEventType.FAILED, attribution, now
        )

    def reset(self, attribution: Attribution, now: datetime) -> StageEvent:
        """Return a faulted stage to pending for another attempt."""
        self._ensure_transition(StageExecutionStatus.PENDING)
        if not self.is_setup:
            self.machine_id = None
        self.queue_position = None
        self.queued_at = None
        self.start_time = None
        self.end_time = None
        self.pause_time = None
        self.resume_time = None
        self.paused_seconds = 0.0
        self.completion_percentage = 0.0
        return self._change_status(
            StageExecutionStatus.PENDING, StageEventType.RESET, attribution, now
        )

    def set_queue_position(
        self, position: int, attribution: Attribution, now: datetime
    ) -> StageEvent | None:
        """Update the queue position; returns None when unchanged."""
        if self.queue_position == position:
            return None
        self.queue_position = position
        self.mark_updated(now)
        return self._event(
            StageEventType.QUEUE_POSITION_CHANGED,
            attribution,
            now,
            previous_status=self.status,
            comment=f"Queue position {position}",
        )

    def mark_processed(self, now: datetime) -> None:
        self.is_processed_by_scheduler = True
        self.mark_updated(now)

    # Internals

    def _ensure_transition(self, target: StageExecutionStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidStatusTransitionError(self.id, self.status.value, target.value)

    def _accumulate_pause(self, now: datetime) -> None:
        if self.pause_time is not None:
            self.paused_seconds += max((now - self.pause_time).total_seconds(), 0.0)

    def _change_status(
        self,
        new_status: StageExecutionStatus,
        event_type: StageEventType,
        attribution: Attribution,
        now: datetime,
    ) -> StageEvent:
        """Internal method to change status, record attribution and build the event."""
        old_status = self.status
        seconds_in_previous = max((now - self.status_changed_at).total_seconds(), 0.0)

        self.status = new_status
        self.status_changed_at = now
        self.operator_id = attribution.operator_id
        self.device_id = attribution.device_id
        self.reason_note = attribution.reason_note
        self.mark_updated(now)

        return self._event(
            event_type,
            attribution,
            now,
            previous_status=old_status,
            seconds_in_previous_state=seconds_in_previous,
        )

    def _event(
        self,
        event_type: StageEventType,
        attribution: Attribution,
        now: datetime,
        previous_status: StageExecutionStatus | None = None,
        previous_machine_id: UUID | None = None,
        seconds_in_previous_state: float | None = None,
        comment: str | None = None,
    ) -> StageEvent:
        return StageEvent(
            stage_execution_id=self.id,
            event_type=event_type,
            previous_status=previous_status,
            new_status=self.status,
            event_time=now,
            operator_id=attribution.operator_id,
            device_id=attribution.device_id,
            comment=comment or attribution.reason_note,
            is_automatic=attribution.is_automatic,
            previous_machine_id=previous_machine_id or self.machine_id,
            new_machine_id=self.machine_id,
            seconds_in_previous_state=seconds_in_previous_state,
        )

    @staticmethod
    def create(
        *,
        batch_id: UUID,
        sub_batch_id: UUID,
        detail_id: UUID,
        route_stage,
        quantity: int,
        batch_created_at: datetime,
        priority: int = 0,
        is_critical: bool = False,
        now: datetime | None = None,
    ) -> "StageExecution":
        """
        Factory method to create a pending stage from a route stage.

        Args:
            batch_id: Owning batch
            sub_batch_id: Owning sub-batch
            detail_id: Detail being produced
            route_stage: RouteStage template
            quantity: Sub-batch quantity
            batch_created_at: Creation time of the owning batch
            priority: Priority copied from the batch
            is_critical: Critical flag copied from the batch
            now: Creation time (defaults to now)

        Returns:
            New pending StageExecution
        """
        created = now or utcnow()
        stage = StageExecution(
            batch_id=batch_id,
            sub_batch_id=sub_batch_id,
            detail_id=detail_id,
            route_stage_id=route_stage.id,
            stage_order=route_stage.order,
            stage_name=route_stage.name,
            machine_type_id=route_stage.machine_type_id,
            norm_time_hours=route_stage.norm_time_hours,
            setup_time_hours=route_stage.setup_time_hours,
            quantity=quantity,
            batch_created_at=batch_created_at,
            priority=priority,
            is_critical=is_critical,
            created_at=created,
            status_changed_at=created,
        )
        stage.validate()
        return stage

    def create_setup_stage(
        self, machine_id: UUID, now: datetime, hours: float | None = None
    ) -> "StageExecution":
        """
        Create the changeover stage that must run before this stage.

        The setup stage shares this stage's route stage and sub-batch, is
        already bound to ``machine_id`` and queued, and ranks one priority
        step higher so it is picked first. ``hours`` overrides the route
        stage default changeover time.
        """
        setup = StageExecution(
            batch_id=self.batch_id,
            sub_batch_id=self.sub_batch_id,
            detail_id=self.detail_id,
            route_stage_id=self.route_stage_id,
            stage_order=self.stage_order,
            stage_name=f"Setup: {self.stage_name}" if self.stage_name else "Setup",
            machine_type_id=self.machine_type_id,
            norm_time_hours=self.norm_time_hours,
            setup_time_hours=self.setup_time_hours if hours is None else hours,
            quantity=self.quantity,
            batch_created_at=self.batch_created_at,
            status=StageExecutionStatus.IN_QUEUE,
            machine_id=machine_id,
            is_setup=True,
            main_stage_id=self.id,
            priority=self.priority + 1,
            is_critical=self.is_critical,
            queued_at=now,
            created_at=now,
            status_changed_at=now,
        )
        self.setup_stage_id = setup.id
        self.mark_updated(now)
        return setup
