"""Route entity: the ordered manufacturing operations for one detail."""

from uuid import UUID

from pydantic import Field, field_validator

from ...shared.base import Entity


class RouteStage(Entity):
    """One operation of a route, performed on a machine of a given type."""

    route_id: UUID | None = None
    order: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=200)
    machine_type_id: UUID
    norm_time_hours: float = Field(ge=0, description="Planned hours per unit")
    setup_time_hours: float = Field(ge=0, description="Default changeover hours")

    def is_valid(self) -> bool:
        return self.norm_time_hours >= 0 and self.setup_time_hours >= 0


class Route(Entity):
    """
    Ordered sequence of route stages for a single detail.

    Stage order is a total order: no two stages share an order value.
    """

    detail_id: UUID
    name: str | None = None
    stages: list[RouteStage] = Field(default_factory=list)

    @field_validator("stages")
    @classmethod
    def validate_unique_order(cls, v: list[RouteStage]) -> list[RouteStage]:
        orders = [stage.order for stage in v]
        if len(orders) != len(set(orders)):
            raise ValueError("Route stage order values must be unique")
        return sorted(v, key=lambda stage: stage.order)

    def is_valid(self) -> bool:
        return len(self.stages) > 0

    def stage_by_id(self, route_stage_id: UUID) -> RouteStage | None:
        return next((s for s in self.stages if s.id == route_stage_id), None)

    def previous_stage(self, order: int) -> RouteStage | None:
        """Closest stage with a lower order, or None for the first stage."""
        earlier = [s for s in self.stages if s.order < order]
        return earlier[-1] if earlier else None

    def next_stage(self, order: int) -> RouteStage | None:
        """Closest stage with a higher order, or None for the last stage."""
        return next((s for s in self.stages if s.order > order), None)
