"""Tests for the BatchPlanner service and quantity splitting."""

from datetime import timedelta
from uuid import uuid4

import pytest
from hypothesis import given, strategies as st

from shopfloor.domain.scheduling.services import split_quantity
from shopfloor.domain.scheduling.services.batch_planner import (
    economic_batch_size,
    planned_duration,
)
from shopfloor.domain.scheduling.value_objects import (
    StageEventType,
    StageExecutionStatus,
)
from shopfloor.domain.shared.exceptions import (
    BatchNotFoundError,
    BatchPlanningError,
    DetailNotFoundError,
    RouteNotFoundError,
)

from ...factories import MONDAY_MORNING_UTC, DetailFactory, StageFactory

NOW = MONDAY_MORNING_UTC


class TestSplitQuantity:
    """Test sub-batch size partitioning."""

    def test_no_split_is_single_sub_batch(self):
        assert split_quantity(10) == [10]

    def test_first_part_absorbs_remainder(self):
        assert split_quantity(10, parts=3) == [4, 3, 3]

    def test_explicit_sizes_returned_as_given(self):
        assert split_quantity(10, sizes=[2, 5, 3]) == [2, 5, 3]

    def test_sizes_must_sum_to_quantity(self):
        with pytest.raises(BatchPlanningError, match="sum to 9"):
            split_quantity(10, sizes=[4, 5])

    def test_sizes_must_be_positive(self):
        with pytest.raises(BatchPlanningError, match="positive"):
            split_quantity(10, sizes=[10, 0])

    def test_more_parts_than_units_rejected(self):
        with pytest.raises(BatchPlanningError, match="Cannot split"):
            split_quantity(3, parts=4)

    def test_non_positive_quantity_rejected(self):
        with pytest.raises(BatchPlanningError, match="must be positive"):
            split_quantity(0)

    @given(st.integers(min_value=1, max_value=10_000), st.data())
    def test_even_split_is_a_partition(self, quantity, data):
        parts = data.draw(st.integers(min_value=1, max_value=min(quantity, 50)))

        sizes = split_quantity(quantity, parts=parts)

        assert sum(sizes) == quantity
        assert len(sizes) == parts
        assert all(size > 0 for size in sizes)
        assert sizes[0] - sizes[-1] == quantity % parts
        assert len(set(sizes[1:])) <= 1


class TestBatchPlanner:
    """Test batch and stage creation."""

    @pytest.fixture
    def planner(self, services):
        return services.planner

    def test_plan_creates_pending_stage_per_route_stage(self, planner, shop, gateway):
        planned = planner.plan_batch(shop.detail.id, 10, now=NOW)

        assert len(planned.batch.sub_batches) == 1
        assert len(planned.stages) == 2
        assert all(s.status == StageExecutionStatus.PENDING for s in planned.stages)
        assert [s.stage_order for s in planned.stages] == [1, 2]
        assert [planned_duration(s) for s in planned.stages] == [
            timedelta(hours=1),
            timedelta(hours=2),
        ]
        assert len(gateway.get_pending_stages()) == 2

    def test_plan_with_split(self, planner, shop):
        planned = planner.plan_batch(shop.detail.id, 10, parts=3, priority=4, now=NOW)

        quantities = [sb.quantity for sb in planned.batch.sub_batches]
        assert quantities == [4, 3, 3]
        assert len(planned.stages) == 6
        assert all(s.priority == 4 for s in planned.stages)
        assert all(s.batch_created_at == planned.batch.created_at for s in planned.stages)

    def test_created_events_recorded(self, planner, shop, gateway):
        planned = planner.plan_batch(shop.detail.id, 10, now=NOW)

        events = gateway.get_events(planned.stages[0].id)
        assert [e.event_type for e in events] == [StageEventType.CREATED]
        assert events[0].is_automatic

    def test_unknown_detail(self, planner):
        with pytest.raises(DetailNotFoundError):
            planner.plan_batch(uuid4(), 10)

    def test_detail_without_route(self, planner, gateway):
        detail = gateway.add_detail(DetailFactory.create_detail(name="Flange"))

        with pytest.raises(RouteNotFoundError):
            planner.plan_batch(detail.id, 10)

    def test_progress_of_new_batch(self, planner, shop):
        planned = planner.plan_batch(shop.detail.id, 10, now=NOW)

        progress = planner.batch_progress(planned.batch.id)

        assert progress.total_stages == 2
        assert progress.completed_stages == 0
        assert progress.percent_complete == 0
        assert not planner.is_batch_complete(planned.batch.id)

    def test_progress_of_unknown_batch(self, planner):
        with pytest.raises(BatchNotFoundError):
            planner.batch_progress(uuid4())

    def test_plan_with_batch_size_keeps_remainder_last(self, planner, shop):
        planned = planner.plan_batch(shop.detail.id, 25, batch_size=10, now=NOW)

        assert [sb.quantity for sb in planned.batch.sub_batches] == [10, 10, 5]


def completed_history(detail_id, quantity, sub_batches, ended_at):
    """Two completed route stages for each of ``sub_batches`` sub-batches."""
    stages = []
    for _ in range(sub_batches):
        sub_batch_id = uuid4()
        for order in (1, 2):
            stage = StageFactory.create_stage(
                status=StageExecutionStatus.COMPLETED,
                detail_id=detail_id,
                sub_batch_id=sub_batch_id,
                stage_order=order,
                quantity=quantity,
                start_time=ended_at - timedelta(hours=1),
                created_at=ended_at - timedelta(hours=2),
            )
            stage.end_time = ended_at
            stage.is_processed_by_scheduler = True
            stages.append(stage)
    return stages


class TestOptimalBatchSize:
    """Test the recommended sub-batch size."""

    @pytest.fixture
    def planner(self, services):
        return services.planner

    def test_most_frequent_recent_size_wins(self, planner, shop, gateway):
        recent = NOW - timedelta(days=10)
        gateway.add_stages(completed_history(shop.detail.id, 25, 2, recent))
        gateway.add_stages(completed_history(shop.detail.id, 40, 1, recent))
        # Outside the 90 day window
        gateway.add_stages(
            completed_history(shop.detail.id, 40, 3, NOW - timedelta(days=100))
        )

        result = planner.optimal_batch_size(shop.detail.id, NOW)

        assert result.batch_size == 25
        assert result.from_history
        assert result.detail_name == shop.detail.name
        assert [o.batch_size for o in result.options] == [10, 20, 25, 50, 100]

    def test_tie_goes_to_smaller_size(self, planner, shop, gateway):
        recent = NOW - timedelta(days=1)
        gateway.add_stages(completed_history(shop.detail.id, 30, 1, recent))
        gateway.add_stages(completed_history(shop.detail.id, 15, 1, recent))

        assert planner.optimal_batch_size(shop.detail.id, NOW).batch_size == 15

    def test_economic_size_without_history(self, planner, shop):
        # Route setup totals 1.0 h: sqrt(2 * 1000 * 100 / 0.1) = 1414 -> 1420
        result = planner.optimal_batch_size(shop.detail.id, NOW)

        assert result.batch_size == 1420
        assert not result.from_history
        assert [o.batch_size for o in result.options] == [10, 20, 50, 100, 1420]

        smallest = result.options[0]
        assert smallest.setup_hours == 1.0
        assert smallest.processing_hours == 3.0
        assert smallest.total_hours == 4.0
        assert smallest.hours_per_unit == 0.4

    def test_economic_size_floor(self):
        assert economic_batch_size(0.0) == 10

    def test_economic_size_rounds_up_to_tens(self):
        # sqrt(2 * 1000 * 0.1 / 0.1) = 44.7 -> 50
        assert economic_batch_size(0.001) == 50

    def test_plan_batch_with_optimal_size(self, planner, shop, gateway):
        gateway.add_stages(
            completed_history(shop.detail.id, 25, 2, NOW - timedelta(days=3))
        )

        planned = planner.plan_batch(shop.detail.id, 60, optimal=True, now=NOW)

        assert [sb.quantity for sb in planned.batch.sub_batches] == [25, 25, 10]

    def test_explicit_split_overrides_optimal(self, planner, shop):
        planned = planner.plan_batch(
            shop.detail.id, 10, split=[6, 4], optimal=True, now=NOW
        )

        assert [sb.quantity for sb in planned.batch.sub_batches] == [6, 4]

    def test_unknown_detail(self, planner):
        with pytest.raises(DetailNotFoundError):
            planner.optimal_batch_size(uuid4(), NOW)
