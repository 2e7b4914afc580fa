"""
In-memory production gateway.

Thread-safe ``ProductionGateway`` used for tests and dry runs. It stores
deep copies, so callers never share state with the store, and enforces the
same version checks and one-running-stage-per-machine rule as the SQL
gateway.
"""

import threading
from datetime import datetime
from uuid import UUID

from ...domain.scheduling.entities.batch import Batch
from ...domain.scheduling.entities.detail import Detail
from ...domain.scheduling.entities.machine import Machine, MachineType
from ...domain.scheduling.entities.route import Route
from ...domain.scheduling.entities.setup_time import SetupTime
from ...domain.scheduling.entities.stage_event import StageEvent
from ...domain.scheduling.entities.stage_execution import StageExecution
from ...domain.scheduling.repositories.persistence_gateway import ProductionGateway
from ...domain.scheduling.value_objects.enums import StageExecutionStatus
from ...domain.shared.exceptions import (
    ConcurrencyError,
    MachineOccupiedError,
    RepositoryError,
    StageNotFoundError,
)


def _copy(entity):
    return entity.model_copy(deep=True)


class InMemoryProductionGateway(ProductionGateway):
    """Dictionary-backed gateway guarded by a single re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._stages: dict[UUID, StageExecution] = {}
        self._events: list[StageEvent] = []
        self._setup_times: dict[tuple[UUID, UUID, UUID], SetupTime] = {}
        self._machines: dict[UUID, Machine] = {}
        self._machine_types: dict[UUID, MachineType] = {}
        self._details: dict[UUID, Detail] = {}
        self._routes: dict[UUID, Route] = {}
        self._batches: dict[UUID, Batch] = {}

    def _select(self, predicate) -> list[StageExecution]:
        with self._lock:
            return [_copy(s) for s in self._stages.values() if predicate(s)]

    # Stage reads

    def get_stage(self, stage_id: UUID) -> StageExecution | None:
        with self._lock:
            stage = self._stages.get(stage_id)
            return _copy(stage) if stage else None

    def get_in_progress_stages(self) -> list[StageExecution]:
        return self._select(lambda s: s.status == StageExecutionStatus.IN_PROGRESS)

    def get_queued_stages(self) -> list[StageExecution]:
        return self._select(lambda s: s.status == StageExecutionStatus.IN_QUEUE)

    def get_pending_stages(self) -> list[StageExecution]:
        return self._select(lambda s: s.status == StageExecutionStatus.PENDING)

    def get_paused_stages(self, by_system: bool | None = None) -> list[StageExecution]:
        return self._select(
            lambda s: s.status == StageExecutionStatus.PAUSED
            and (by_system is None or s.paused_by_system == by_system)
        )

    def get_recently_completed_unprocessed(self, since: datetime) -> list[StageExecution]:
        stages = self._select(
            lambda s: s.status == StageExecutionStatus.COMPLETED
            and not s.is_processed_by_scheduler
            and s.end_time is not None
            and s.end_time >= since
        )
        return sorted(stages, key=lambda s: s.end_time)

    def get_in_progress_on_machine(self, machine_id: UUID) -> StageExecution | None:
        running = self._select(
            lambda s: s.machine_id == machine_id
            and s.status == StageExecutionStatus.IN_PROGRESS
        )
        return running[0] if running else None

    def get_stages_queued_for_machine(self, machine_id: UUID) -> list[StageExecution]:
        return self._select(
            lambda s: s.machine_id == machine_id and s.status.is_schedulable
        )

    def get_stages_for_sub_batch(self, sub_batch_id: UUID) -> list[StageExecution]:
        stages = self._select(lambda s: s.sub_batch_id == sub_batch_id)
        return sorted(stages, key=lambda s: s.stage_order)

    def get_stages_for_batch(self, batch_id: UUID) -> list[StageExecution]:
        stages = self._select(lambda s: s.batch_id == batch_id)
        return sorted(stages, key=lambda s: s.stage_order)

    def get_completed_stages_for_detail(
        self, detail_id: UUID, since: datetime
    ) -> list[StageExecution]:
        stages = self._select(
            lambda s: s.detail_id == detail_id
            and s.status == StageExecutionStatus.COMPLETED
            and s.end_time is not None
            and s.end_time >= since
        )
        return sorted(stages, key=lambda s: s.end_time)

    # Stage writes

    def add_stages(
        self, stages: list[StageExecution], events: list[StageEvent] | None = None
    ) -> None:
        with self._lock:
            for stage in stages:
                if stage.id in self._stages:
                    raise RepositoryError(
                        f"Stage {stage.id} already exists", {"stage_id": str(stage.id)}
                    )
            for stage in stages:
                self._stages[stage.id] = _copy(stage)
            self._events.extend(_copy(e) for e in events or [])

    def save_stage(
        self, stage: StageExecution, events: list[StageEvent] | None = None
    ) -> StageExecution:
        with self._lock:
            stored = self._stages.get(stage.id)
            if stored is None:
                raise StageNotFoundError(stage.id)
            if stored.version != stage.version:
                raise ConcurrencyError(stage.id, stage.version)
            if stage.status == StageExecutionStatus.IN_PROGRESS and stage.machine_id:
                for other in self._stages.values():
                    if (
                        other.id != stage.id
                        and other.machine_id == stage.machine_id
                        and other.status == StageExecutionStatus.IN_PROGRESS
                    ):
                        raise MachineOccupiedError(stage.machine_id, other.id)

            stage.version += 1
            self._stages[stage.id] = _copy(stage)
            self._events.extend(_copy(e) for e in events or [])
            return stage

    def mark_stage_processed(self, stage_id: UUID) -> None:
        with self._lock:
            stored = self._stages.get(stage_id)
            if stored is None:
                raise StageNotFoundError(stage_id)
            stored.is_processed_by_scheduler = True

    def record_event(self, event: StageEvent) -> None:
        with self._lock:
            self._events.append(_copy(event))

    def get_events(self, stage_id: UUID) -> list[StageEvent]:
        with self._lock:
            return [_copy(e) for e in self._events if e.stage_execution_id == stage_id]

    # Setup times and machines

    def get_setup_time(
        self, machine_id: UUID, from_detail_id: UUID, to_detail_id: UUID
    ) -> SetupTime | None:
        with self._lock:
            entry = self._setup_times.get((machine_id, from_detail_id, to_detail_id))
            return _copy(entry) if entry else None

    def save_setup_time(self, entry: SetupTime) -> SetupTime:
        with self._lock:
            self._setup_times[entry.key] = _copy(entry)
            return entry

    def get_last_detail_on_machine(self, machine_id: UUID) -> UUID | None:
        with self._lock:
            completed = [
                s
                for s in self._stages.values()
                if s.machine_id == machine_id
                and s.status == StageExecutionStatus.COMPLETED
                and not s.is_setup
                and s.end_time is not None
            ]
            if not completed:
                return None
            return max(completed, key=lambda s: s.end_time).detail_id

    def get_machine(self, machine_id: UUID) -> Machine | None:
        with self._lock:
            machine = self._machines.get(machine_id)
            return _copy(machine) if machine else None

    def get_machines_by_type(self, machine_type_id: UUID) -> list[Machine]:
        with self._lock:
            machines = [
                _copy(m)
                for m in self._machines.values()
                if m.machine_type_id == machine_type_id
            ]
        return sorted(machines, key=lambda m: m.name)

    # Reference data

    def get_detail(self, detail_id: UUID) -> Detail | None:
        with self._lock:
            detail = self._details.get(detail_id)
            return _copy(detail) if detail else None

    def get_route_for_detail(self, detail_id: UUID) -> Route | None:
        with self._lock:
            route = self._routes.get(detail_id)
            return _copy(route) if route else None

    def get_batch(self, batch_id: UUID) -> Batch | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return _copy(batch) if batch else None

    def add_batch(self, batch: Batch) -> Batch:
        with self._lock:
            self._batches[batch.id] = _copy(batch)
            return batch

    # Seeding helpers for reference data

    def add_detail(self, detail: Detail) -> Detail:
        with self._lock:
            self._details[detail.id] = _copy(detail)
        return detail

    def add_machine_type(self, machine_type: MachineType) -> MachineType:
        with self._lock:
            self._machine_types[machine_type.id] = _copy(machine_type)
        return machine_type

    def add_machine(self, machine: Machine) -> Machine:
        with self._lock:
            self._machines[machine.id] = _copy(machine)
        return machine

    def add_route(self, route: Route) -> Route:
        with self._lock:
            self._routes[route.detail_id] = _copy(route)
        return route
