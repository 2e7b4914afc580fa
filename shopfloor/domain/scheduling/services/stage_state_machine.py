"""
Stage State Machine Service

Applies stage execution transitions with their cross-stage guards:
route-order predecessors, setup stages, machine exclusivity and the shift
calendar. Operator actions and the reconciliation loop both go through
this service, so both are serialized by the same per-machine lock.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

from ....core.observability import STAGE_TRANSITIONS, get_logger
from ...shared.base import DomainService, utcnow
from ...shared.exceptions import (
    BusinessRuleViolation,
    DomainError,
    InvalidStatusTransitionError,
    MachineOccupiedError,
    PredecessorNotCompletedError,
    StageNotFoundError,
)
from ..entities.stage_event import StageEvent
from ..entities.stage_execution import StageExecution
from ..repositories.persistence_gateway import ProductionGateway
from ..value_objects.attribution import Attribution
from ..value_objects.enums import StageExecutionStatus
from ..value_objects.shift_calendar import ShiftCalendar

logger = get_logger(__name__)


class MachineLocks(Protocol):
    def hold(self, machine_id: UUID): ...


class ContinuationPolicy:
    """Rules for which stages may run outside working hours."""

    def __init__(
        self,
        high_priority_threshold: int = 7,
        near_finish: timedelta = timedelta(minutes=30),
        enforce_working_hours: bool = True,
    ) -> None:
        self.high_priority_threshold = high_priority_threshold
        self.near_finish = near_finish
        self.enforce_working_hours = enforce_working_hours

    @classmethod
    def from_settings(cls, settings) -> "ContinuationPolicy":
        return cls(
            high_priority_threshold=settings.RECONCILIATION_HIGH_PRIORITY_THRESHOLD,
            near_finish=timedelta(minutes=settings.RECONCILIATION_NEAR_FINISH_MINUTES),
        )

    def allows(self, stage: StageExecution, now: datetime) -> bool:
        return stage.should_continue_outside_working_hours(
            now,
            high_priority_threshold=self.high_priority_threshold,
            near_finish=self.near_finish,
        )


class StageStateMachine(DomainService):
    """
    Service applying guarded transitions to stage executions.

    Every public method loads a fresh copy of the stage, applies one
    transition and persists it with its audit event in one versioned write.
    """

    def __init__(
        self,
        gateway: ProductionGateway,
        locks: MachineLocks,
        calendar: ShiftCalendar,
        policy: ContinuationPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            gateway: Persistence gateway
            locks: Per-machine lock registry
            calendar: Facility shift calendar
            policy: Outside-working-hours continuation rules
            clock: Source of the current naive UTC time
        """
        self._gateway = gateway
        self._locks = locks
        self._calendar = calendar
        self._policy = policy or ContinuationPolicy()
        self._clock = clock

    # Queries

    def get_stage(self, stage_id: UUID) -> StageExecution:
        stage = self._gateway.get_stage(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        return stage

    def blocking_predecessor(self, stage: StageExecution) -> StageExecution | None:
        """
        Find the stage that keeps ``stage`` from starting, if any.

        That is its setup stage while the setup is neither completed nor
        cancelled, otherwise the first earlier route stage of the same
        sub-batch that is not completed.
        """
        if stage.setup_stage_id is not None:
            setup = self._gateway.get_stage(stage.setup_stage_id)
            if setup is not None and setup.status not in (
                StageExecutionStatus.COMPLETED,
                StageExecutionStatus.CANCELLED,
            ):
                return setup

        siblings = self._gateway.get_stages_for_sub_batch(stage.sub_batch_id)
        earlier = sorted(
            (
                s
                for s in siblings
                if not s.is_setup and s.stage_order < stage.stage_order
            ),
            key=lambda s: s.stage_order,
        )
        for predecessor in earlier:
            if predecessor.status != StageExecutionStatus.COMPLETED:
                return predecessor
        return None

    def machine_occupant(
        self, machine_id: UUID, stage_id: UUID | None = None
    ) -> StageExecution | None:
        """The in-progress stage on ``machine_id`` other than ``stage_id``."""
        running = self._gateway.get_in_progress_on_machine(machine_id)
        if running is None or running.id == stage_id:
            return None
        return running

    def is_machine_free(self, machine_id: UUID, stage_id: UUID | None = None) -> bool:
        return self.machine_occupant(machine_id, stage_id) is None

    def may_run_now(self, stage: StageExecution, now: datetime) -> bool:
        """Whether the calendar (or the continuation rules) allow running ``stage``."""
        if not self._policy.enforce_working_hours:
            return True
        return self._calendar.is_working_at(now) or self._policy.allows(stage, now)

    # Transitions

    def enqueue(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        """Move a pending stage into the queue once its predecessors are done."""
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        if stage.status != StageExecutionStatus.PENDING:
            raise InvalidStatusTransitionError(
                stage.id, stage.status.value, StageExecutionStatus.IN_QUEUE.value
            )
        blocking = self.blocking_predecessor(stage)
        if blocking is not None:
            raise PredecessorNotCompletedError(stage.id, blocking.id)
        event = stage.enqueue(attribution, now)
        return self._persist(stage, event, attribution)

    def assign_machine(
        self,
        stage_id: UUID,
        machine_id: UUID,
        attribution: Attribution,
        now: datetime | None = None,
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.assign_machine(machine_id, attribution, now)
        return self._persist(stage, event, attribution)

    def start(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        """
        Start a pending or queued stage on its assigned machine.

        Args:
            stage_id: Stage execution identifier
            attribution: Who starts the stage
            now: Transition time (defaults to the clock)

        Returns:
            The started stage

        Raises:
            InvalidStatusTransitionError: If the stage is not pending or queued
            BusinessRuleViolation: If no machine is assigned or the calendar
                forbids starting now
            PredecessorNotCompletedError: If an earlier stage is not completed
            MachineOccupiedError: If another stage runs on the machine
            MachineLockTimeoutError: If the machine lock is contended
        """
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        if not stage.status.is_schedulable:
            raise InvalidStatusTransitionError(
                stage.id, stage.status.value, StageExecutionStatus.IN_PROGRESS.value
            )
        self._guard_start(stage, now)

        with self._locks.hold(stage.machine_id):
            stage = self.get_stage(stage_id)
            if not stage.status.is_schedulable:
                raise InvalidStatusTransitionError(
                    stage.id, stage.status.value, StageExecutionStatus.IN_PROGRESS.value
                )
            occupant = self.machine_occupant(stage.machine_id, stage.id)
            if occupant is not None:
                self._refuse(
                    stage, MachineOccupiedError(stage.machine_id, occupant.id), now
                )
            event = stage.start(attribution, now)
            return self._persist(stage, event, attribution)

    def pause(
        self,
        stage_id: UUID,
        attribution: Attribution,
        now: datetime | None = None,
        by_system: bool = False,
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.pause(attribution, now, by_system=by_system)
        return self._persist(stage, event, attribution)

    def resume(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        """
        Resume a paused stage once its machine is free again.

        Raises:
            InvalidStatusTransitionError: If the stage is not paused
            BusinessRuleViolation: If the calendar forbids running now
            MachineOccupiedError: If another stage runs on the machine
        """
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        if stage.status != StageExecutionStatus.PAUSED:
            raise InvalidStatusTransitionError(
                stage.id, stage.status.value, StageExecutionStatus.IN_PROGRESS.value
            )
        if not self.may_run_now(stage, now):
            raise BusinessRuleViolation(
                "OUTSIDE_WORKING_HOURS",
                f"Stage {stage.id} cannot resume outside working hours",
                {"stage_id": str(stage.id)},
            )

        with self._locks.hold(stage.machine_id):
            stage = self.get_stage(stage_id)
            occupant = self.machine_occupant(stage.machine_id, stage.id)
            if occupant is not None:
                raise MachineOccupiedError(stage.machine_id, occupant.id)
            event = stage.resume(attribution, now)
            return self._persist(stage, event, attribution)

    def complete(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.complete(attribution, now)
        return self._persist(stage, event, attribution)

    def cancel(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.cancel(attribution, now)
        return self._persist(stage, event, attribution)

    def fail(
        self,
        stage_id: UUID,
        attribution: Attribution,
        message: str,
        now: datetime | None = None,
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.fail(attribution, now, message)
        return self._persist(stage, event, attribution)

    def reset(
        self, stage_id: UUID, attribution: Attribution, now: datetime | None = None
    ) -> StageExecution:
        now = now or self._clock()
        stage = self.get_stage(stage_id)
        event = stage.reset(attribution, now)
        return self._persist(stage, event, attribution)

    # Internals

    def _guard_start(self, stage: StageExecution, now: datetime) -> None:
        if stage.machine_id is None:
            self._refuse(
                stage,
                BusinessRuleViolation(
                    "MACHINE_NOT_ASSIGNED",
                    f"Stage {stage.id} has no assigned machine",
                    {"stage_id": str(stage.id)},
                ),
                now,
            )
        blocking = self.blocking_predecessor(stage)
        if blocking is not None:
            self._refuse(stage, PredecessorNotCompletedError(stage.id, blocking.id), now)
        if not self.may_run_now(stage, now):
            self._refuse(
                stage,
                BusinessRuleViolation(
                    "OUTSIDE_WORKING_HOURS",
                    f"Stage {stage.id} cannot start outside working hours",
                    {"stage_id": str(stage.id)},
                ),
                now,
            )

    def _refuse(self, stage: StageExecution, error: DomainError, now: datetime) -> None:
        """Record a refused start on the stage, then raise ``error``."""
        stage.record_failed_start(error.message, now)
        try:
            self._gateway.save_stage(stage)
        except DomainError as save_error:
            logger.warning(
                "Could not record refused start",
                stage_id=str(stage.id),
                error=save_error.message,
            )
        raise error

    def _persist(
        self, stage: StageExecution, event: StageEvent, attribution: Attribution
    ) -> StageExecution:
        saved = self._gateway.save_stage(stage, events=[event])
        STAGE_TRANSITIONS.labels(
            transition=event.event_type.value, initiator=attribution.initiator
        ).inc()
        logger.info(
            "Stage transition applied",
            stage_id=str(saved.id),
            event_type=event.event_type.value,
            previous_status=event.previous_status.value
            if event.previous_status
            else None,
            status=saved.status.value,
            machine_id=str(saved.machine_id) if saved.machine_id else None,
            operator_id=attribution.operator_id,
            reason=attribution.reason_note,
        )
        return saved
