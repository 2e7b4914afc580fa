"""
SQLModel production gateway.

Implements ``ProductionGateway`` on SQLModel/SQLAlchemy sessions. Each call
runs in its own unit of work; stage updates are compare-and-set on the
``version`` column, and the partial unique index on running stages turns a
second concurrent start on a machine into ``MachineOccupiedError``.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

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
    DomainError,
    MachineOccupiedError,
    StageNotFoundError,
)
from .mappers import (
    BatchMapper,
    RouteMapper,
    StageEventMapper,
    StageExecutionMapper,
    from_row,
    to_row,
)
from .models import Batch as SQLBatch
from .models import Detail as SQLDetail
from .models import Machine as SQLMachine
from .models import MachineType as SQLMachineType
from .models import Route as SQLRoute
from .models import RouteStage as SQLRouteStage
from .models import SetupTime as SQLSetupTime
from .models import StageEvent as SQLStageEvent
from .models import StageExecution as SQLStageExecution
from .models import SubBatch as SQLSubBatch
from .unit_of_work import DatabaseError, SqlModelUnitOfWork

IN_PROGRESS = StageExecutionStatus.IN_PROGRESS.value
SCHEDULABLE = [StageExecutionStatus.PENDING.value, StageExecutionStatus.IN_QUEUE.value]


class SqlModelProductionGateway(ProductionGateway):
    """
    Gateway implementation backed by a SQL database.

    Provides the stage reads and versioned writes the scheduling engine
    needs, plus seeding helpers for reference data.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._session_factory = session_factory

    def _uow(self) -> SqlModelUnitOfWork:
        return SqlModelUnitOfWork(self._session_factory)

    def _stages_where(self, *conditions, order_by=None) -> list[StageExecution]:
        try:
            with self._uow() as uow:
                statement = select(SQLStageExecution).where(*conditions)
                if order_by is not None:
                    statement = statement.order_by(order_by)
                rows = uow.session.exec(statement).all()
                return [StageExecutionMapper.sql_to_domain(row) for row in rows]
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(f"Error querying stage executions: {str(e)}") from e

    # Stage reads

    def get_stage(self, stage_id: UUID) -> StageExecution | None:
        stages = self._stages_where(SQLStageExecution.id == stage_id)
        return stages[0] if stages else None

    def get_in_progress_stages(self) -> list[StageExecution]:
        return self._stages_where(SQLStageExecution.status == IN_PROGRESS)

    def get_queued_stages(self) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.status == StageExecutionStatus.IN_QUEUE.value
        )

    def get_pending_stages(self) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.status == StageExecutionStatus.PENDING.value
        )

    def get_paused_stages(self, by_system: bool | None = None) -> list[StageExecution]:
        conditions = [SQLStageExecution.status == StageExecutionStatus.PAUSED.value]
        if by_system is not None:
            conditions.append(SQLStageExecution.paused_by_system == by_system)
        return self._stages_where(*conditions)

    def get_recently_completed_unprocessed(self, since: datetime) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.status == StageExecutionStatus.COMPLETED.value,
            SQLStageExecution.is_processed_by_scheduler.is_(False),
            SQLStageExecution.end_time >= since,
            order_by=SQLStageExecution.end_time,
        )

    def get_in_progress_on_machine(self, machine_id: UUID) -> StageExecution | None:
        stages = self._stages_where(
            SQLStageExecution.machine_id == machine_id,
            SQLStageExecution.status == IN_PROGRESS,
        )
        return stages[0] if stages else None

    def get_stages_queued_for_machine(self, machine_id: UUID) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.machine_id == machine_id,
            SQLStageExecution.status.in_(SCHEDULABLE),
        )

    def get_stages_for_sub_batch(self, sub_batch_id: UUID) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.sub_batch_id == sub_batch_id,
            order_by=SQLStageExecution.stage_order,
        )

    def get_stages_for_batch(self, batch_id: UUID) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.batch_id == batch_id,
            order_by=SQLStageExecution.stage_order,
        )

    def get_completed_stages_for_detail(
        self, detail_id: UUID, since: datetime
    ) -> list[StageExecution]:
        return self._stages_where(
            SQLStageExecution.detail_id == detail_id,
            SQLStageExecution.status == StageExecutionStatus.COMPLETED.value,
            SQLStageExecution.end_time >= since,
            order_by=SQLStageExecution.end_time,
        )

    # Stage writes

    def add_stages(
        self, stages: list[StageExecution], events: list[StageEvent] | None = None
    ) -> None:
        try:
            with self._uow() as uow:
                for stage in stages:
                    uow.session.add(StageExecutionMapper.domain_to_sql(stage))
                uow.flush()
                for event in events or []:
                    uow.session.add(StageEventMapper.domain_to_sql(event))
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(f"Error adding stage executions: {str(e)}") from e

    def save_stage(
        self, stage: StageExecution, events: list[StageEvent] | None = None
    ) -> StageExecution:
        values = StageExecutionMapper.to_values(stage)
        values.pop("id")
        values["version"] = stage.version + 1

        statement = (
            update(SQLStageExecution)
            .where(SQLStageExecution.id == stage.id)
            .where(SQLStageExecution.version == stage.version)
            .values(**values)
        )

        try:
            with self._uow() as uow:
                try:
                    result = uow.session.connection().execute(statement)
                except IntegrityError as e:
                    if stage.status == StageExecutionStatus.IN_PROGRESS and stage.machine_id:
                        raise MachineOccupiedError(stage.machine_id) from e
                    raise DatabaseError(
                        f"Integrity error saving stage {stage.id}: {str(e)}"
                    ) from e

                if result.rowcount == 0:
                    if uow.session.get(SQLStageExecution, stage.id) is None:
                        raise StageNotFoundError(stage.id)
                    raise ConcurrencyError(stage.id, stage.version)

                for event in events or []:
                    uow.session.add(StageEventMapper.domain_to_sql(event))
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(f"Error saving stage {stage.id}: {str(e)}") from e

        stage.version += 1
        return stage

    def mark_stage_processed(self, stage_id: UUID) -> None:
        statement = (
            update(SQLStageExecution)
            .where(SQLStageExecution.id == stage_id)
            .values(is_processed_by_scheduler=True)
        )
        try:
            with self._uow() as uow:
                uow.session.connection().execute(statement)
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Error marking stage {stage_id} processed: {str(e)}"
            ) from e

    def record_event(self, event: StageEvent) -> None:
        try:
            with self._uow() as uow:
                uow.session.add(StageEventMapper.domain_to_sql(event))
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(f"Error recording stage event: {str(e)}") from e

    def get_events(self, stage_id: UUID) -> list[StageEvent]:
        try:
            with self._uow() as uow:
                statement = (
                    select(SQLStageEvent)
                    .where(SQLStageEvent.stage_execution_id == stage_id)
                    .order_by(SQLStageEvent.event_time, SQLStageEvent.created_at)
                )
                rows = uow.session.exec(statement).all()
                return [StageEventMapper.sql_to_domain(row) for row in rows]
        except DomainError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Error finding events for stage {stage_id}: {str(e)}"
            ) from e

    # Setup times and machines

    def get_setup_time(
        self, machine_id: UUID, from_detail_id: UUID, to_detail_id: UUID
    ) -> SetupTime | None:
        try:
            with self._uow() as uow:
                statement = select(SQLSetupTime).where(
                    SQLSetupTime.machine_id == machine_id,
                    SQLSetupTime.from_detail_id == from_detail_id,
                    SQLSetupTime.to_detail_id == to_detail_id,
                )
                row = uow.session.exec(statement).first()
                return from_row(row, SetupTime) if row else None
        except Exception as e:
            raise DatabaseError(f"Error finding setup time: {str(e)}") from e

    def save_setup_time(self, entry: SetupTime) -> SetupTime:
        try:
            with self._uow() as uow:
                statement = select(SQLSetupTime).where(
                    SQLSetupTime.machine_id == entry.machine_id,
                    SQLSetupTime.from_detail_id == entry.from_detail_id,
                    SQLSetupTime.to_detail_id == entry.to_detail_id,
                )
                row = uow.session.exec(statement).first()
                if row is None:
                    uow.session.add(to_row(entry, SQLSetupTime))
                    return entry
                row.hours = entry.hours
                row.updated_at = entry.updated_at or entry.created_at
                uow.session.add(row)
                return from_row(row, SetupTime)
        except Exception as e:
            raise DatabaseError(f"Error saving setup time: {str(e)}") from e

    def get_last_detail_on_machine(self, machine_id: UUID) -> UUID | None:
        try:
            with self._uow() as uow:
                statement = (
                    select(SQLStageExecution.detail_id)
                    .where(
                        SQLStageExecution.machine_id == machine_id,
                        SQLStageExecution.status
                        == StageExecutionStatus.COMPLETED.value,
                        SQLStageExecution.is_setup.is_(False),
                    )
                    .order_by(SQLStageExecution.end_time.desc())
                    .limit(1)
                )
                return uow.session.exec(statement).first()
        except Exception as e:
            raise DatabaseError(
                f"Error finding last detail on machine {machine_id}: {str(e)}"
            ) from e

    def get_machine(self, machine_id: UUID) -> Machine | None:
        try:
            with self._uow() as uow:
                row = uow.session.get(SQLMachine, machine_id)
                return from_row(row, Machine) if row else None
        except Exception as e:
            raise DatabaseError(f"Error finding machine {machine_id}: {str(e)}") from e

    def get_machines_by_type(self, machine_type_id: UUID) -> list[Machine]:
        try:
            with self._uow() as uow:
                statement = (
                    select(SQLMachine)
                    .where(SQLMachine.machine_type_id == machine_type_id)
                    .order_by(SQLMachine.name)
                )
                return [from_row(row, Machine) for row in uow.session.exec(statement).all()]
        except Exception as e:
            raise DatabaseError(
                f"Error finding machines of type {machine_type_id}: {str(e)}"
            ) from e

    # Reference data

    def get_detail(self, detail_id: UUID) -> Detail | None:
        try:
            with self._uow() as uow:
                row = uow.session.get(SQLDetail, detail_id)
                return from_row(row, Detail) if row else None
        except Exception as e:
            raise DatabaseError(f"Error finding detail {detail_id}: {str(e)}") from e

    def get_route_for_detail(self, detail_id: UUID) -> Route | None:
        try:
            with self._uow() as uow:
                header = uow.session.exec(
                    select(SQLRoute).where(SQLRoute.detail_id == detail_id)
                ).first()
                if header is None:
                    return None
                stages = uow.session.exec(
                    select(SQLRouteStage)
                    .where(SQLRouteStage.route_id == header.id)
                    .order_by(SQLRouteStage.stage_order)
                ).all()
                return RouteMapper.sql_to_domain(header, list(stages))
        except Exception as e:
            raise DatabaseError(
                f"Error finding route for detail {detail_id}: {str(e)}"
            ) from e

    def get_batch(self, batch_id: UUID) -> Batch | None:
        try:
            with self._uow() as uow:
                header = uow.session.get(SQLBatch, batch_id)
                if header is None:
                    return None
                subs = uow.session.exec(
                    select(SQLSubBatch)
                    .where(SQLSubBatch.batch_id == batch_id)
                    .order_by(SQLSubBatch.created_at)
                ).all()
                return BatchMapper.sql_to_domain(header, list(subs))
        except Exception as e:
            raise DatabaseError(f"Error finding batch {batch_id}: {str(e)}") from e

    def add_batch(self, batch: Batch) -> Batch:
        try:
            with self._uow() as uow:
                header, subs = BatchMapper.domain_to_sql(batch)
                uow.session.add(header)
                uow.flush()
                for sub in subs:
                    uow.session.add(sub)
            return batch
        except Exception as e:
            raise DatabaseError(f"Error adding batch {batch.id}: {str(e)}") from e

    # Seeding helpers for reference data

    def add_detail(self, detail: Detail) -> Detail:
        self._add_rows(to_row(detail, SQLDetail))
        return detail

    def add_machine_type(self, machine_type: MachineType) -> MachineType:
        self._add_rows(to_row(machine_type, SQLMachineType))
        return machine_type

    def add_machine(self, machine: Machine) -> Machine:
        self._add_rows(to_row(machine, SQLMachine))
        return machine

    def add_route(self, route: Route) -> Route:
        header, stages = RouteMapper.domain_to_sql(route)
        self._add_rows(header, *stages)
        return route

    def _add_rows(self, *rows) -> None:
        try:
            with self._uow() as uow:
                for row in rows:
                    uow.session.add(row)
                    uow.flush()
        except Exception as e:
            raise DatabaseError(f"Error adding reference data: {str(e)}") from e
