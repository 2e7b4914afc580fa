"""
Mappers for converting between domain entities and SQL entities.

Field names match between the two layers except where noted; enums are
stored by value.
"""

from typing import Any

from ...domain.scheduling.entities.batch import Batch as DomainBatch
from ...domain.scheduling.entities.batch import SubBatch as DomainSubBatch
from ...domain.scheduling.entities.route import Route as DomainRoute
from ...domain.scheduling.entities.route import RouteStage as DomainRouteStage
from ...domain.scheduling.entities.stage_event import StageEvent as DomainStageEvent
from ...domain.scheduling.entities.stage_execution import (
    StageExecution as DomainStageExecution,
)
from ...domain.scheduling.value_objects.enums import StageEventType, StageExecutionStatus
from .models import Batch as SQLBatch
from .models import Route as SQLRoute
from .models import RouteStage as SQLRouteStage
from .models import StageEvent as SQLStageEvent
from .models import StageExecution as SQLStageExecution
from .models import SubBatch as SQLSubBatch


class StageExecutionMapper:
    """Mapper between StageExecution domain entities and rows."""

    @staticmethod
    def to_values(stage: DomainStageExecution) -> dict[str, Any]:
        """Column values for an insert or update, status stored by value."""
        values = stage.model_dump()
        values["status"] = stage.status.value
        return values

    @staticmethod
    def domain_to_sql(stage: DomainStageExecution) -> SQLStageExecution:
        return SQLStageExecution(**StageExecutionMapper.to_values(stage))

    @staticmethod
    def sql_to_domain(row: SQLStageExecution) -> DomainStageExecution:
        values = row.model_dump()
        values["status"] = StageExecutionStatus(row.status)
        return DomainStageExecution.model_validate(values)


class StageEventMapper:
    @staticmethod
    def domain_to_sql(event: DomainStageEvent) -> SQLStageEvent:
        values = event.model_dump()
        values["event_type"] = event.event_type.value
        values["previous_status"] = (
            event.previous_status.value if event.previous_status else None
        )
        values["new_status"] = event.new_status.value if event.new_status else None
        return SQLStageEvent(**values)

    @staticmethod
    def sql_to_domain(row: SQLStageEvent) -> DomainStageEvent:
        values = row.model_dump()
        values["event_type"] = StageEventType(row.event_type)
        values["previous_status"] = (
            StageExecutionStatus(row.previous_status) if row.previous_status else None
        )
        values["new_status"] = (
            StageExecutionStatus(row.new_status) if row.new_status else None
        )
        return DomainStageEvent.model_validate(values)


class RouteMapper:
    """Routes are stored as a header row plus one row per stage."""

    @staticmethod
    def domain_to_sql(route: DomainRoute) -> tuple[SQLRoute, list[SQLRouteStage]]:
        header = SQLRoute(
            id=route.id,
            detail_id=route.detail_id,
            name=route.name,
            created_at=route.created_at,
            updated_at=route.updated_at,
        )
        stages = [
            SQLRouteStage(
                id=stage.id,
                route_id=route.id,
                stage_order=stage.order,
                name=stage.name,
                machine_type_id=stage.machine_type_id,
                norm_time_hours=stage.norm_time_hours,
                setup_time_hours=stage.setup_time_hours,
                created_at=stage.created_at,
                updated_at=stage.updated_at,
            )
            for stage in route.stages
        ]
        return header, stages

    @staticmethod
    def sql_to_domain(header: SQLRoute, stages: list[SQLRouteStage]) -> DomainRoute:
        return DomainRoute(
            id=header.id,
            detail_id=header.detail_id,
            name=header.name,
            created_at=header.created_at,
            updated_at=header.updated_at,
            stages=[
                DomainRouteStage(
                    id=row.id,
                    route_id=row.route_id,
                    order=row.stage_order,
                    name=row.name,
                    machine_type_id=row.machine_type_id,
                    norm_time_hours=row.norm_time_hours,
                    setup_time_hours=row.setup_time_hours,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
                for row in stages
            ],
        )


class BatchMapper:
    @staticmethod
    def domain_to_sql(batch: DomainBatch) -> tuple[SQLBatch, list[SQLSubBatch]]:
        header = SQLBatch(**batch.model_dump(exclude={"sub_batches"}))
        subs = [SQLSubBatch(**sub.model_dump()) for sub in batch.sub_batches]
        return header, subs

    @staticmethod
    def sql_to_domain(header: SQLBatch, subs: list[SQLSubBatch]) -> DomainBatch:
        values = header.model_dump()
        values["sub_batches"] = [
            DomainSubBatch.model_validate(sub.model_dump()) for sub in subs
        ]
        return DomainBatch.model_validate(values)


def to_row(entity, row_class):
    """Copy a flat domain entity into its table model."""
    return row_class(**entity.model_dump())


def from_row(row, entity_class):
    """Validate a table row into its flat domain entity."""
    return entity_class.model_validate(row.model_dump())
