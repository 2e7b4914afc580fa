"""
SQLModel database models for the scheduling engine.

These models provide the ORM mapping between domain entities and the SQL
schema. Status columns hold the enum values as plain strings so the
partial unique index on running stages can reference them directly.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from ...domain.shared.base import utcnow


class TimestampedBase(SQLModel):
    """Identity and audit columns shared by every table."""

    id: UUID = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = Field(default=None)


class Detail(TimestampedBase, table=True):
    __tablename__ = "details"

    name: str = Field(max_length=200)
    number: str = Field(max_length=50, unique=True, index=True)


class MachineType(TimestampedBase, table=True):
    __tablename__ = "machine_types"

    name: str = Field(max_length=100, unique=True)


class Machine(TimestampedBase, table=True):
    __tablename__ = "machines"

    name: str = Field(max_length=100)
    inventory_number: str | None = Field(default=None, max_length=50)
    machine_type_id: UUID = Field(foreign_key="machine_types.id", index=True)
    priority: int = Field(default=0, ge=0)


class Route(TimestampedBase, table=True):
    __tablename__ = "routes"

    detail_id: UUID = Field(foreign_key="details.id", unique=True, index=True)
    name: str | None = Field(default=None, max_length=200)


class RouteStage(TimestampedBase, table=True):
    """One operation of a route; ``stage_order`` is unique within the route."""

    __tablename__ = "route_stages"
    __table_args__ = (UniqueConstraint("route_id", "stage_order"),)

    route_id: UUID = Field(foreign_key="routes.id", index=True)
    stage_order: int = Field(ge=1)
    name: str = Field(max_length=200)
    machine_type_id: UUID = Field(foreign_key="machine_types.id")
    norm_time_hours: float = Field(ge=0)
    setup_time_hours: float = Field(ge=0)


class Batch(TimestampedBase, table=True):
    __tablename__ = "batches"

    detail_id: UUID = Field(foreign_key="details.id", index=True)
    quantity: int = Field(gt=0)
    priority: int = Field(default=0, ge=0, le=10)
    is_critical: bool = Field(default=False)


class SubBatch(TimestampedBase, table=True):
    __tablename__ = "sub_batches"

    batch_id: UUID = Field(foreign_key="batches.id", index=True)
    quantity: int = Field(gt=0)


class StageExecution(TimestampedBase, table=True):
    """
    Stage execution table model.

    At most one row per machine may be ``in_progress``; the partial unique
    index enforces it at the database level.
    """

    __tablename__ = "stage_executions"
    __table_args__ = (
        Index(
            "uq_stage_executions_machine_in_progress",
            "machine_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
    )

    batch_id: UUID = Field(foreign_key="batches.id", index=True)
    sub_batch_id: UUID = Field(foreign_key="sub_batches.id", index=True)
    detail_id: UUID = Field(foreign_key="details.id")
    route_stage_id: UUID = Field(foreign_key="route_stages.id")
    stage_order: int = Field(ge=1)
    stage_name: str = Field(default="", max_length=200)
    machine_type_id: UUID = Field(foreign_key="machine_types.id")
    norm_time_hours: float = Field(ge=0)
    setup_time_hours: float = Field(ge=0)
    quantity: int = Field(gt=0)
    batch_created_at: datetime

    status: str = Field(default="pending", max_length=20, index=True)
    machine_id: UUID | None = Field(default=None, foreign_key="machines.id", index=True)

    is_setup: bool = Field(default=False)
    setup_stage_id: UUID | None = Field(default=None)
    main_stage_id: UUID | None = Field(default=None)

    priority: int = Field(default=0, ge=0)
    is_critical: bool = Field(default=False)
    queue_position: int | None = Field(default=None)
    queued_at: datetime | None = Field(default=None)

    start_time: datetime | None = Field(default=None)
    end_time: datetime | None = Field(default=None, index=True)
    pause_time: datetime | None = Field(default=None)
    resume_time: datetime | None = Field(default=None)
    paused_seconds: float = Field(default=0.0, ge=0)
    paused_by_system: bool = Field(default=False)

    operator_id: str | None = Field(default=None, max_length=100)
    device_id: str | None = Field(default=None, max_length=100)
    reason_note: str | None = Field(default=None)
    status_changed_at: datetime = Field(default_factory=utcnow)

    start_attempts: int = Field(default=0, ge=0)
    last_error_message: str | None = Field(default=None)
    is_processed_by_scheduler: bool = Field(default=False)
    completion_percentage: float = Field(default=0.0)
    version: int = Field(default=0, ge=0)


class StageEvent(TimestampedBase, table=True):
    __tablename__ = "stage_events"

    stage_execution_id: UUID = Field(foreign_key="stage_executions.id", index=True)
    event_type: str = Field(max_length=40)
    previous_status: str | None = Field(default=None, max_length=20)
    new_status: str | None = Field(default=None, max_length=20)
    event_time: datetime = Field(default_factory=utcnow, index=True)
    operator_id: str | None = Field(default=None, max_length=100)
    device_id: str | None = Field(default=None, max_length=100)
    comment: str | None = Field(default=None)
    is_automatic: bool = Field(default=False)
    previous_machine_id: UUID | None = Field(default=None)
    new_machine_id: UUID | None = Field(default=None)
    seconds_in_previous_state: float | None = Field(default=None)


class SetupTime(TimestampedBase, table=True):
    """Directional changeover duration on a machine."""

    __tablename__ = "setup_times"
    __table_args__ = (
        UniqueConstraint("machine_id", "from_detail_id", "to_detail_id"),
    )

    machine_id: UUID = Field(foreign_key="machines.id", index=True)
    from_detail_id: UUID = Field(foreign_key="details.id")
    to_detail_id: UUID = Field(foreign_key="details.id")
    hours: float = Field(ge=0)
