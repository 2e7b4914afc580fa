"""Stage event: append-only audit record of a stage execution transition."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ...shared.base import Entity, utcnow
from ..value_objects.enums import StageEventType, StageExecutionStatus


class StageEvent(Entity):
    """One transition (or assignment change) applied to a stage execution."""

    stage_execution_id: UUID
    event_type: StageEventType
    previous_status: StageExecutionStatus | None = None
    new_status: StageExecutionStatus | None = None
    event_time: datetime = Field(default_factory=utcnow)
    operator_id: str | None = None
    device_id: str | None = None
    comment: str | None = None
    is_automatic: bool = False
    previous_machine_id: UUID | None = None
    new_machine_id: UUID | None = None
    seconds_in_previous_state: float | None = None

    def is_valid(self) -> bool:
        return self.seconds_in_previous_state is None or self.seconds_in_previous_state >= 0
