"""
Batch Planner Service

Decomposes a production request into sub-batches and instantiates one
pending stage execution per route stage per sub-batch.
"""

import math
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from ....core.observability import get_logger
from ...shared.base import DomainService, utcnow
from ...shared.exceptions import (
    BatchNotFoundError,
    BatchPlanningError,
    DetailNotFoundError,
    RouteNotFoundError,
)
from ..entities.batch import Batch, SubBatch
from ..entities.stage_event import StageEvent
from ..entities.stage_execution import StageExecution
from ..repositories.persistence_gateway import ProductionGateway
from ..value_objects.attribution import Attribution
from ..value_objects.enums import StageEventType, StageExecutionStatus

logger = get_logger(__name__)


def split_quantity(
    quantity: int,
    parts: int | None = None,
    sizes: list[int] | None = None,
    batch_size: int | None = None,
) -> list[int]:
    """
    Partition a quantity into sub-batch sizes.

    Caller sizes are validated and returned as given. A ``batch_size``
    cuts the quantity into full sub-batches of that size with the remainder
    last. Otherwise the quantity is split evenly into ``parts`` and the
    first sub-batch absorbs the remainder. With none of these, the whole
    quantity is one sub-batch.

    Args:
        quantity: Total quantity, must be positive
        parts: Number of sub-batches for an even split
        sizes: Explicit sub-batch sizes
        batch_size: Maximum sub-batch size

    Returns:
        List of positive sizes summing to ``quantity``

    Raises:
        BatchPlanningError: If the inputs cannot form a valid partition
    """
    if quantity <= 0:
        raise BatchPlanningError(
            "Batch quantity must be positive", {"quantity": quantity}
        )

    if sizes is not None:
        if not sizes or any(size <= 0 for size in sizes):
            raise BatchPlanningError(
                "Sub-batch sizes must be positive", {"quantity": quantity}
            )
        if sum(sizes) != quantity:
            raise BatchPlanningError(
                f"Sub-batch sizes sum to {sum(sizes)}, expected {quantity}",
                {"quantity": quantity, "sum": sum(sizes)},
            )
        return list(sizes)

    if batch_size is not None:
        if batch_size <= 0:
            raise BatchPlanningError(
                "Batch size must be positive", {"batch_size": batch_size}
            )
        full, remainder = divmod(quantity, batch_size)
        return [batch_size] * full + ([remainder] if remainder else [])

    parts = parts or 1
    if not 1 <= parts <= quantity:
        raise BatchPlanningError(
            f"Cannot split {quantity} units into {parts} sub-batches",
            {"quantity": quantity, "parts": parts},
        )
    base, remainder = divmod(quantity, parts)
    return [base + remainder] + [base] * (parts - 1)


def planned_duration(stage: StageExecution) -> timedelta:
    """Setup hours for setup stages, norm hours times quantity otherwise."""
    return stage.planned_duration


HISTORY_WINDOW = timedelta(days=90)
CANDIDATE_BATCH_SIZES = (10, 20, 50, 100)

# Economic order quantity assumptions used when a detail has no history
ANNUAL_DEMAND = 1000.0
SETUP_COST_PER_HOUR = 100.0
HOLDING_COST = 0.1


def economic_batch_size(setup_hours: float) -> int:
    """
    EOQ batch size for a route's total setup hours.

    Rounded up to a multiple of 10, never below 10.
    """
    setup_cost = setup_hours * SETUP_COST_PER_HOUR
    size = int(math.sqrt(2 * ANNUAL_DEMAND * setup_cost / HOLDING_COST))
    return max(10, math.ceil(size / 10) * 10)


@dataclass(frozen=True)
class BatchSizeOption:
    """Time cost of producing one sub-batch of ``batch_size`` units."""

    batch_size: int
    total_hours: float
    setup_hours: float
    processing_hours: float
    hours_per_unit: float


@dataclass(frozen=True)
class OptimalBatchSize:
    detail_id: UUID
    detail_name: str
    batch_size: int
    from_history: bool
    options: list[BatchSizeOption]


@dataclass
class PlannedBatch:
    batch: Batch
    stages: list[StageExecution]


@dataclass(frozen=True)
class BatchProgress:
    """Stage counts for a batch; setup stages do not count toward completion."""

    batch_id: UUID
    total_stages: int
    completed_stages: int
    setup_stages: int

    @property
    def is_complete(self) -> bool:
        return self.total_stages > 0 and self.completed_stages == self.total_stages

    @property
    def percent_complete(self) -> float:
        if self.total_stages == 0:
            return 0.0
        return self.completed_stages / self.total_stages * 100


class BatchPlanner(DomainService):
    """Service creating batches and their pending stage executions."""

    def __init__(
        self,
        gateway: ProductionGateway,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._clock = clock

    def plan_batch(
        self,
        detail_id: UUID,
        quantity: int,
        split: list[int] | None = None,
        parts: int | None = None,
        priority: int = 0,
        is_critical: bool = False,
        attribution: Attribution | None = None,
        now: datetime | None = None,
        batch_size: int | None = None,
        optimal: bool = False,
    ) -> PlannedBatch:
        """
        Create a batch and its pending stages.

        Args:
            detail_id: Detail to produce
            quantity: Total quantity
            split: Explicit sub-batch sizes
            parts: Number of sub-batches for an even split
            batch_size: Maximum sub-batch size
            optimal: Cut into sub-batches of the detail's optimal batch size
                when no explicit split is given
            priority: Batch priority copied to every stage
            is_critical: Critical flag copied to every stage
            attribution: Who requested the batch
            now: Creation time

        Returns:
            PlannedBatch with the saved batch and its stages

        Raises:
            DetailNotFoundError: If the detail does not exist
            RouteNotFoundError: If the detail has no route with stages
            BatchPlanningError: If the quantity split is invalid
        """
        now = now or self._clock()
        attribution = attribution or Attribution.system("Batch planned")

        if self._gateway.get_detail(detail_id) is None:
            raise DetailNotFoundError(detail_id)
        route = self._gateway.get_route_for_detail(detail_id)
        if route is None or not route.stages:
            raise RouteNotFoundError(detail_id)

        if optimal and split is None and batch_size is None:
            batch_size = self.optimal_batch_size(detail_id, now).batch_size
        sizes = split_quantity(quantity, parts=parts, sizes=split, batch_size=batch_size)

        batch = Batch(
            detail_id=detail_id,
            quantity=quantity,
            priority=priority,
            is_critical=is_critical,
            created_at=now,
        )
        batch.sub_batches = [SubBatch(batch_id=batch.id, quantity=size) for size in sizes]
        batch.validate()

        stages: list[StageExecution] = []
        events: list[StageEvent] = []
        for sub_batch in batch.sub_batches:
            for route_stage in route.stages:
                stage = StageExecution.create(
                    batch_id=batch.id,
                    sub_batch_id=sub_batch.id,
                    detail_id=detail_id,
                    route_stage=route_stage,
                    quantity=sub_batch.quantity,
                    batch_created_at=batch.created_at,
                    priority=priority,
                    is_critical=is_critical,
                    now=now,
                )
                stages.append(stage)
                events.append(
                    StageEvent(
                        stage_execution_id=stage.id,
                        event_type=StageEventType.CREATED,
                        new_status=stage.status,
                        event_time=now,
                        operator_id=attribution.operator_id,
                        device_id=attribution.device_id,
                        comment=attribution.reason_note,
                        is_automatic=attribution.is_automatic,
                    )
                )

        saved = self._gateway.add_batch(batch)
        self._gateway.add_stages(stages, events=events)

        logger.info(
            "Batch planned",
            batch_id=str(saved.id),
            detail_id=str(detail_id),
            quantity=quantity,
            sub_batches=len(sizes),
            stages=len(stages),
        )
        return PlannedBatch(batch=saved, stages=stages)

    def optimal_batch_size(
        self, detail_id: UUID, now: datetime | None = None
    ) -> OptimalBatchSize:
        """
        Recommend a sub-batch size for a detail.

        The sub-batch size produced most often over the last 90 days wins,
        counted in distinct sub-batches; ties go to the smaller size. A
        detail with no history falls back to the economic batch size of its
        route's total setup time. The recommendation is returned together
        with the time cost of the standard candidate sizes.

        Raises:
            DetailNotFoundError: If the detail does not exist
            RouteNotFoundError: If the detail has no route with stages
        """
        now = now or self._clock()
        detail = self._gateway.get_detail(detail_id)
        if detail is None:
            raise DetailNotFoundError(detail_id)
        route = self._gateway.get_route_for_detail(detail_id)
        if route is None or not route.stages:
            raise RouteNotFoundError(detail_id)

        history = self._gateway.get_completed_stages_for_detail(
            detail_id, since=now - HISTORY_WINDOW
        )
        sub_batches_by_size: dict[int, set[UUID]] = defaultdict(set)
        for stage in history:
            sub_batches_by_size[stage.quantity].add(stage.sub_batch_id)

        norm_hours = sum(stage.norm_time_hours for stage in route.stages)
        setup_hours = sum(stage.setup_time_hours for stage in route.stages)

        if sub_batches_by_size:
            best = min(
                sub_batches_by_size.items(),
                key=lambda item: (-len(item[1]), item[0]),
            )[0]
        else:
            best = economic_batch_size(setup_hours)

        options = []
        for size in sorted({*CANDIDATE_BATCH_SIZES, best}):
            total = norm_hours * size + setup_hours
            options.append(
                BatchSizeOption(
                    batch_size=size,
                    total_hours=round(total, 2),
                    setup_hours=round(setup_hours, 2),
                    processing_hours=round(norm_hours * size, 2),
                    hours_per_unit=round(total / size, 4),
                )
            )

        logger.info(
            "Optimal batch size calculated",
            detail_id=str(detail_id),
            batch_size=best,
            from_history=bool(sub_batches_by_size),
        )
        return OptimalBatchSize(
            detail_id=detail_id,
            detail_name=detail.name,
            batch_size=best,
            from_history=bool(sub_batches_by_size),
            options=options,
        )

    def batch_progress(self, batch_id: UUID) -> BatchProgress:
        if self._gateway.get_batch(batch_id) is None:
            raise BatchNotFoundError(batch_id)
        stages = self._gateway.get_stages_for_batch(batch_id)
        main_stages = [s for s in stages if not s.is_setup]
        return BatchProgress(
            batch_id=batch_id,
            total_stages=len(main_stages),
            completed_stages=sum(
                1 for s in main_stages if s.status == StageExecutionStatus.COMPLETED
            ),
            setup_stages=len(stages) - len(main_stages),
        )

    def is_batch_complete(self, batch_id: UUID) -> bool:
        return self.batch_progress(batch_id).is_complete
