"""Detail entity: a part type produced on the shop floor."""

from pydantic import Field

from ...shared.base import Entity


class Detail(Entity):
    """A part type identified by a unique number."""

    name: str = Field(min_length=1, max_length=200)
    number: str = Field(min_length=1, max_length=50)

    def is_valid(self) -> bool:
        return bool(self.name.strip()) and bool(self.number.strip())
