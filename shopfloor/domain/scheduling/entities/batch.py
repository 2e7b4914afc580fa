"""Batch and sub-batch entities for production requests."""

from uuid import UUID

from pydantic import Field

from ...shared.base import Entity


class SubBatch(Entity):
    """A quantity slice of a batch that moves through the route as one unit."""

    batch_id: UUID
    quantity: int = Field(gt=0)

    def is_valid(self) -> bool:
        return self.quantity > 0


class Batch(Entity):
    """
    A production request for ``quantity`` units of one detail.

    Sub-batch quantities always sum to the batch quantity.
    """

    detail_id: UUID
    quantity: int = Field(gt=0)
    priority: int = Field(default=0, ge=0, le=10)
    is_critical: bool = False
    sub_batches: list[SubBatch] = Field(default_factory=list)

    def is_valid(self) -> bool:
        if not self.sub_batches:
            return self.quantity > 0
        return sum(sb.quantity for sb in self.sub_batches) == self.quantity
