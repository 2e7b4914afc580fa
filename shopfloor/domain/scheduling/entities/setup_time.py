"""Setup time entry: directional changeover duration on a machine."""

from uuid import UUID

from pydantic import Field

from ...shared.base import Entity


class SetupTime(Entity):
    """Hours needed on ``machine_id`` to switch from one detail to another."""

    machine_id: UUID
    from_detail_id: UUID
    to_detail_id: UUID
    hours: float = Field(ge=0)

    def is_valid(self) -> bool:
        return self.hours >= 0

    @property
    def key(self) -> tuple[UUID, UUID, UUID]:
        return (self.machine_id, self.from_detail_id, self.to_detail_id)
