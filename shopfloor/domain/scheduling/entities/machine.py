"""Machine entities for production resources."""

from uuid import UUID

from pydantic import Field

from ...shared.base import Entity


class MachineType(Entity):
    """A class of interchangeable machines (e.g. lathe, milling)."""

    name: str = Field(min_length=1, max_length=100)

    def is_valid(self) -> bool:
        return bool(self.name.strip())


class Machine(Entity):
    """
    A physical machine.

    Priority breaks ties when several machines of the required type are
    free; a higher value is preferred.
    """

    name: str = Field(min_length=1, max_length=100)
    inventory_number: str | None = Field(default=None, max_length=50)
    machine_type_id: UUID
    priority: int = Field(default=0, ge=0)

    def is_valid(self) -> bool:
        return bool(self.name.strip()) and self.priority >= 0
