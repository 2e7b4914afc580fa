"""
Scheduling Engine Service

Assigns queued stages to free machines, interposes setup stages when the
detail on a machine changes, keeps per-machine queues ordered and answers
whether a stage can start.
"""

from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from ....core.observability import SCHEDULING_DECISIONS, get_logger, monitor_operation
from ...shared.base import DomainService, utcnow
from ...shared.exceptions import (
    BusinessRuleViolation,
    ConcurrencyError,
    InvalidStatusTransitionError,
    MachineLockTimeoutError,
    MachineOccupiedError,
    NoEligibleMachineError,
    PredecessorNotCompletedError,
)
from ..entities.machine import Machine
from ..entities.stage_event import StageEvent
from ..entities.stage_execution import StageExecution
from ..repositories.persistence_gateway import ProductionGateway
from ..value_objects.attribution import SYSTEM_DEVICE_ID, SYSTEM_OPERATOR_ID, Attribution
from ..value_objects.enums import StageEventType, StageExecutionStatus
from .batch_planner import BatchPlanner
from .setup_time_matrix import SetupRequirement, SetupTimeMatrix
from .stage_state_machine import StageStateMachine

logger = get_logger(__name__)

RUNNING_STAGE_MIN_REMAINING = timedelta(minutes=5)


class SchedulingEngine(DomainService):
    """
    Service making machine assignment and queue decisions.

    All decisions are made on a fresh read through the gateway; all state
    changes go through ``StageStateMachine``.
    """

    def __init__(
        self,
        gateway: ProductionGateway,
        state_machine: StageStateMachine,
        setup_matrix: SetupTimeMatrix,
        planner: BatchPlanner,
        clock: Callable[[], datetime] = utcnow,
        operator_id: str = SYSTEM_OPERATOR_ID,
        device_id: str = SYSTEM_DEVICE_ID,
    ) -> None:
        """
        Initialize the scheduling engine.

        Args:
            gateway: Persistence gateway
            state_machine: Guarded transition service
            setup_matrix: Changeover lookups
            planner: Batch planner, used for batch completion checks
            clock: Source of the current naive UTC time
            operator_id: Operator recorded on automatic transitions
            device_id: Device recorded on automatic transitions
        """
        self._gateway = gateway
        self._state_machine = state_machine
        self._setup_matrix = setup_matrix
        self._planner = planner
        self._clock = clock
        self._operator_id = operator_id
        self._device_id = device_id

    def _system(self, reason: str) -> Attribution:
        return Attribution.system(
            reason, operator_id=self._operator_id, device_id=self._device_id
        )

    # Queries

    def free_machines(
        self, machine_type_id: UUID, exclude: UUID | None = None
    ) -> list[Machine]:
        """Machines of a type with no stage in progress."""
        return [
            machine
            for machine in self._gateway.get_machines_by_type(machine_type_id)
            if machine.id != exclude and self._state_machine.is_machine_free(machine.id)
        ]

    def select_machine(
        self, stage: StageExecution, candidates: list[Machine]
    ) -> tuple[Machine, SetupRequirement] | None:
        """
        Pick the best machine for a stage.

        Minimises setup hours, then prefers higher machine priority, then
        the machine name.
        """
        best: tuple[tuple[float, int, str], Machine, SetupRequirement] | None = None
        for machine in candidates:
            requirement = self._setup_matrix.required_setup(machine, stage)
            setup_hours = requirement.hours if requirement.required else 0.0
            key = (setup_hours, -machine.priority, machine.name)
            if best is None or key < best[0]:
                best = (key, machine, requirement)
        if best is None:
            return None
        return best[1], best[2]

    def ordered_queue(self, limit: int | None = None) -> list[StageExecution]:
        """Queued stages in queue order."""
        queued = sorted(self._gateway.get_queued_stages(), key=lambda s: s.queue_sort_key)
        return queued[:limit] if limit is not None else queued

    def ready_stages(self, limit: int | None = None) -> list[StageExecution]:
        """Pending and queued stages whose predecessors are done, in queue order."""
        candidates = sorted(
            self._gateway.get_pending_stages() + self._gateway.get_queued_stages(),
            key=lambda s: s.queue_sort_key,
        )
        ready = []
        for stage in candidates:
            if self._state_machine.blocking_predecessor(stage) is None:
                ready.append(stage)
                if limit is not None and len(ready) >= limit:
                    break
        return ready

    @monitor_operation("can_start_stage")
    def can_start_stage(self, stage_id: UUID) -> bool:
        """
        Check if a stage could start right now.

        True when the stage is pending or queued, its predecessors and its
        setup stage are completed, and a machine is free: the assigned one,
        or any machine of the required type when none is assigned.
        """
        stage = self._gateway.get_stage(stage_id)
        if stage is None or not stage.status.is_schedulable:
            return False
        if self._state_machine.blocking_predecessor(stage) is not None:
            return False
        if stage.machine_id is not None:
            return self._state_machine.is_machine_free(stage.machine_id, stage.id)
        return bool(self.free_machines(stage.machine_type_id))

    # Assignment

    @monitor_operation("schedule_stage_execution")
    def schedule_stage_execution(
        self, stage_id: UUID, now: datetime | None = None
    ) -> Machine:
        """
        Assign a machine to a stage without starting it.

        A pending stage without a machine enters the queue first. An
        assigned stage keeps its machine unless that machine is busy, the
        stage has no setup stage yet and another machine is free.

        Args:
            stage_id: Stage execution identifier
            now: Decision time (defaults to the clock)

        Returns:
            The machine the stage is assigned to

        Raises:
            InvalidStatusTransitionError: If the stage already started or ended
            PredecessorNotCompletedError: If a pending stage cannot be queued yet
            NoEligibleMachineError: If no machine of the required type is free
        """
        now = now or self._clock()
        stage = self._state_machine.get_stage(stage_id)
        if not stage.status.is_schedulable:
            raise InvalidStatusTransitionError(
                stage.id, stage.status.value, StageExecutionStatus.IN_QUEUE.value
            )

        if stage.status == StageExecutionStatus.PENDING and stage.machine_id is None:
            stage = self._state_machine.enqueue(
                stage.id, self._system("Queued by scheduler"), now
            )

        if stage.machine_id is not None:
            current = self._gateway.get_machine(stage.machine_id)
            if current is not None and (
                stage.is_setup
                or stage.setup_stage_id is not None
                or self._state_machine.is_machine_free(current.id, stage.id)
            ):
                SCHEDULING_DECISIONS.labels(outcome="kept").inc()
                return current
            candidates = self.free_machines(stage.machine_type_id, exclude=stage.machine_id)
            if not candidates:
                SCHEDULING_DECISIONS.labels(outcome="waiting").inc()
                if current is None:
                    raise NoEligibleMachineError(stage.id, stage.machine_type_id)
                return current
            reason = "Reassigned to a free machine"
            outcome = "reassigned"
        else:
            candidates = self.free_machines(stage.machine_type_id)
            reason = "Assigned by scheduler"
            outcome = "assigned"

        choice = self.select_machine(stage, candidates)
        if choice is None:
            SCHEDULING_DECISIONS.labels(outcome="no_machine").inc()
            raise NoEligibleMachineError(stage.id, stage.machine_type_id)
        machine, requirement = choice

        stage = self._state_machine.assign_machine(
            stage.id, machine.id, self._system(reason), now
        )
        if requirement.required and stage.setup_stage_id is None:
            self._insert_setup_stage(stage, machine, requirement, now)
            outcome = f"{outcome}_with_setup"

        SCHEDULING_DECISIONS.labels(outcome=outcome).inc()
        logger.info(
            "Stage scheduled",
            stage_id=str(stage.id),
            machine_id=str(machine.id),
            machine=machine.name,
            setup_required=requirement.required,
            setup_hours=requirement.hours,
        )
        return machine

    def _insert_setup_stage(
        self,
        stage: StageExecution,
        machine: Machine,
        requirement: SetupRequirement,
        now: datetime,
    ) -> StageExecution:
        if not requirement.found:
            self._setup_matrix.remember(
                machine.id, requirement.from_detail_id, stage.detail_id, requirement.hours
            )

        attribution = self._system(
            f"Setup required on {machine.name}: {requirement.hours:.2f} h"
        )
        setup = stage.create_setup_stage(machine.id, now, hours=requirement.hours)
        self._gateway.add_stages(
            [setup],
            events=[
                StageEvent(
                    stage_execution_id=setup.id,
                    event_type=StageEventType.CREATED,
                    new_status=setup.status,
                    event_time=now,
                    operator_id=attribution.operator_id,
                    device_id=attribution.device_id,
                    comment=attribution.reason_note,
                    is_automatic=True,
                    new_machine_id=machine.id,
                )
            ],
        )
        self._gateway.save_stage(
            stage,
            events=[
                StageEvent(
                    stage_execution_id=stage.id,
                    event_type=StageEventType.SETUP_REQUIRED,
                    previous_status=stage.status,
                    new_status=stage.status,
                    event_time=now,
                    operator_id=attribution.operator_id,
                    device_id=attribution.device_id,
                    comment=attribution.reason_note,
                    is_automatic=True,
                    new_machine_id=machine.id,
                )
            ],
        )
        logger.info(
            "Setup stage inserted",
            stage_id=str(stage.id),
            setup_stage_id=str(setup.id),
            machine_id=str(machine.id),
            hours=requirement.hours,
            learned=not requirement.found,
        )
        return setup

    # Starting and follow-up

    @monitor_operation("start_pending_stage")
    def start_pending_stage(self, stage_id: UUID, now: datetime | None = None) -> bool:
        """
        Start a stage if its guards hold.

        Returns False instead of raising when the machine was taken in the
        meantime or a guard rejects the start.
        """
        now = now or self._clock()
        try:
            self._state_machine.start(
                stage_id, self._system("Auto-started by scheduler"), now
            )
        except (MachineOccupiedError, MachineLockTimeoutError, ConcurrencyError) as e:
            logger.info(
                "Stage not started, machine unavailable",
                stage_id=str(stage_id),
                reason=e.message,
            )
            return False
        except BusinessRuleViolation as e:
            logger.warning(
                "Stage start rejected",
                stage_id=str(stage_id),
                rule=e.rule_name,
                reason=e.message,
            )
            return False
        return True

    @monitor_operation("handle_stage_completion")
    def handle_stage_completion(self, stage_id: UUID, now: datetime | None = None) -> None:
        """
        Follow up a completed stage.

        A completed setup stage starts its main stage when the calendar
        allows. A completed main stage queues and schedules the next route
        stage of its sub-batch, or checks whether the batch is done.
        """
        now = now or self._clock()
        stage = self._state_machine.get_stage(stage_id)
        if stage.status != StageExecutionStatus.COMPLETED:
            logger.warning(
                "Completion follow-up skipped, stage not completed",
                stage_id=str(stage.id),
                status=stage.status.value,
            )
            return

        self._gateway.mark_stage_processed(stage.id)

        if stage.is_setup:
            self._start_main_after_setup(stage, now)
            return

        next_stage = self._next_route_stage(stage)
        if next_stage is None:
            progress = self._planner.batch_progress(stage.batch_id)
            if progress.is_complete:
                logger.info(
                    "Batch completed",
                    batch_id=str(stage.batch_id),
                    stages=progress.total_stages,
                )
            return

        if next_stage.status == StageExecutionStatus.PENDING and next_stage.machine_id is None:
            try:
                self._state_machine.enqueue(
                    next_stage.id, self._system("Predecessor completed"), now
                )
            except PredecessorNotCompletedError as e:
                logger.info(
                    "Next stage still blocked",
                    stage_id=str(next_stage.id),
                    blocking_stage_id=e.details.get("blocking_stage_id"),
                )
                return

        if next_stage.status.is_schedulable:
            try:
                self.schedule_stage_execution(next_stage.id, now)
            except NoEligibleMachineError:
                logger.info(
                    "No free machine for next stage, it stays queued",
                    stage_id=str(next_stage.id),
                )

    def _start_main_after_setup(self, setup: StageExecution, now: datetime) -> None:
        if setup.main_stage_id is None:
            return
        main = self._gateway.get_stage(setup.main_stage_id)
        if main is None or not main.status.is_schedulable:
            return
        if not self._state_machine.may_run_now(main, now):
            logger.info(
                "Setup done outside working hours, main stage waits",
                stage_id=str(main.id),
            )
            return
        self.start_pending_stage(main.id, now)

    def _next_route_stage(self, stage: StageExecution) -> StageExecution | None:
        later = [
            s
            for s in self._gateway.get_stages_for_sub_batch(stage.sub_batch_id)
            if not s.is_setup and s.stage_order > stage.stage_order
        ]
        return min(later, key=lambda s: s.stage_order) if later else None

    # Queue management

    @monitor_operation("optimize_queue")
    def optimize_queue(self, now: datetime | None = None) -> dict[UUID | None, list[UUID]]:
        """
        Re-number every per-machine queue.

        Each queue is ordered by priority descending, batch creation time,
        stage creation time and finally stage id, so the result only
        depends on stored state. Unassigned queued stages form their own
        queue under the ``None`` key.

        Returns:
            Mapping of machine id to ordered stage ids
        """
        now = now or self._clock()
        attribution = self._system("Queue optimized")

        queues: dict[UUID | None, list[StageExecution]] = defaultdict(list)
        for stage in self._gateway.get_queued_stages():
            queues[stage.machine_id].append(stage)

        result: dict[UUID | None, list[UUID]] = {}
        changed = 0
        for machine_id, stages in queues.items():
            ordered = sorted(stages, key=lambda s: s.queue_sort_key)
            result[machine_id] = [s.id for s in ordered]
            for position, stage in enumerate(ordered, start=1):
                event = stage.set_queue_position(position, attribution, now)
                if event is None:
                    continue
                try:
                    self._gateway.save_stage(stage, events=[event])
                    changed += 1
                except ConcurrencyError:
                    logger.info(
                        "Queue position skipped, stage changed concurrently",
                        stage_id=str(stage.id),
                    )

        logger.info("Queue optimized", queues=len(result), positions_changed=changed)
        return result

    @monitor_operation("estimate_machine_release_time")
    def estimate_machine_release_time(
        self, machine_id: UUID, now: datetime | None = None
    ) -> datetime:
        """
        Estimate when a machine finishes its current and queued work.

        The running stage counts with its remaining time, but never less
        than five minutes; queued stages count with their planned duration.
        """
        now = now or self._clock()
        running = self._gateway.get_in_progress_on_machine(machine_id)
        queued = self._gateway.get_stages_queued_for_machine(machine_id)
        if running is None and not queued:
            return now

        busy = timedelta(0)
        if running is not None:
            busy += max(running.remaining(now), RUNNING_STAGE_MIN_REMAINING)
        for stage in queued:
            busy += stage.planned_duration
        return now + busy
