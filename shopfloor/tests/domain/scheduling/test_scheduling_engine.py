"""
Tests for the SchedulingEngine service.

Covers machine selection, setup stage insertion and learning, reassignment
away from busy machines, completion follow-up, queue ordering and machine
release estimates.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from hypothesis import given, settings, strategies as st

from shopfloor.core.config import Settings
from shopfloor.core.machine_locks import MachineLockRegistry
from shopfloor.domain.scheduling.value_objects import (
    Attribution,
    StageEventType,
    StageExecutionStatus,
)
from shopfloor.domain.shared.exceptions import NoEligibleMachineError
from shopfloor.infrastructure.database import InMemoryProductionGateway
from shopfloor.infrastructure.service_dependencies import build_scheduling_services

from ...factories import (
    MONDAY_MORNING_UTC,
    DetailFactory,
    FakeClock,
    MachineFactory,
    StageFactory,
    seed_shop,
)

NOW = MONDAY_MORNING_UTC
OPERATOR = Attribution.manual("op-17")


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def state_machine(services):
    return services.state_machine


def give_history(gateway, machine, detail_id, ended_at=NOW - timedelta(hours=1)):
    """Record that ``machine`` last produced ``detail_id``."""
    gateway.add_stages(
        [StageFactory.create_completed_stage(machine.id, detail_id, ended_at)]
    )


class TestMachineSelection:
    """Test choosing among free machines."""

    def test_prefers_higher_priority_without_setup(self, services, engine, gateway):
        shop = seed_shop(gateway, machine_count=0)
        low = gateway.add_machine(
            MachineFactory.create_machine(shop.machine_type.id, "Lathe-A", priority=1)
        )
        high = gateway.add_machine(
            MachineFactory.create_machine(shop.machine_type.id, "Lathe-B", priority=5)
        )
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        machine = engine.schedule_stage_execution(planned.stages[0].id, NOW)

        assert machine.id == high.id
        assert machine.id != low.id

    def test_name_breaks_remaining_ties(self, services, engine, gateway):
        shop = seed_shop(gateway, machine_count=2)
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        machine = engine.schedule_stage_execution(planned.stages[0].id, NOW)

        assert machine.name == "Lathe-01"

    def test_minimises_setup_before_priority(self, services, engine, gateway):
        shop = seed_shop(gateway, machine_count=0)
        other_detail = gateway.add_detail(DetailFactory.create_detail(name="Flange"))
        busy_history = gateway.add_machine(
            MachineFactory.create_machine(shop.machine_type.id, "Lathe-A", priority=9)
        )
        same_detail = gateway.add_machine(
            MachineFactory.create_machine(shop.machine_type.id, "Lathe-B", priority=0)
        )
        give_history(gateway, busy_history, other_detail.id)
        give_history(gateway, same_detail, shop.detail.id)
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        machine = engine.schedule_stage_execution(planned.stages[0].id, NOW)

        assert machine.id == same_detail.id
        stage = gateway.get_stage(planned.stages[0].id)
        assert stage.setup_stage_id is None


class TestScheduleStageExecution:
    """Test assignment outcomes."""

    def test_pending_stage_is_queued_and_assigned(self, services, engine, shop, gateway):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        first = planned.stages[0]

        engine.schedule_stage_execution(first.id, NOW)

        stage = gateway.get_stage(first.id)
        assert stage.status == StageExecutionStatus.IN_QUEUE
        assert stage.machine_id == shop.machine.id
        assert stage.queued_at == NOW

    def test_no_free_machine_keeps_stage_queued(
        self, services, engine, state_machine, shop, gateway
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, parts=2, now=NOW)
        running, waiting = planned.stages[0], planned.stages[2]
        engine.schedule_stage_execution(running.id, NOW)
        state_machine.start(running.id, OPERATOR, NOW)

        with pytest.raises(NoEligibleMachineError):
            engine.schedule_stage_execution(waiting.id, NOW)

        stage = gateway.get_stage(waiting.id)
        assert stage.status == StageExecutionStatus.IN_QUEUE
        assert stage.machine_id is None

    def test_busy_machine_reassigned_to_free_one(
        self, services, engine, state_machine, gateway
    ):
        shop = seed_shop(gateway, machine_count=2)
        first_machine, second_machine = shop.machines
        planned = services.planner.plan_batch(shop.detail.id, 10, parts=2, now=NOW)
        running, waiting = planned.stages[0], planned.stages[2]
        for stage in (running, waiting):
            state_machine.enqueue(stage.id, OPERATOR, NOW)
            state_machine.assign_machine(stage.id, first_machine.id, OPERATOR, NOW)
        state_machine.start(running.id, OPERATOR, NOW)

        machine = engine.schedule_stage_execution(waiting.id, NOW)

        assert machine.id == second_machine.id
        events = [e.event_type for e in gateway.get_events(waiting.id)]
        assert events[-1] == StageEventType.REASSIGNED

    def test_busy_machine_kept_when_nothing_else_free(
        self, services, engine, state_machine, shop, gateway
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, parts=2, now=NOW)
        running, waiting = planned.stages[0], planned.stages[2]
        for stage in (running, waiting):
            state_machine.enqueue(stage.id, OPERATOR, NOW)
            state_machine.assign_machine(stage.id, shop.machine.id, OPERATOR, NOW)
        state_machine.start(running.id, OPERATOR, NOW)

        machine = engine.schedule_stage_execution(waiting.id, NOW)

        assert machine.id == shop.machine.id


class TestSetupInsertion:
    """Test changeover stages inserted at assignment."""

    @pytest.fixture
    def changeover(self, services, engine, gateway):
        """A single machine that last produced a different detail."""
        shop = seed_shop(gateway, setup_hours=0.5)
        other_detail = gateway.add_detail(DetailFactory.create_detail(name="Flange"))
        give_history(gateway, shop.machine, other_detail.id)
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        main = planned.stages[0]
        engine.schedule_stage_execution(main.id, NOW)
        main = gateway.get_stage(main.id)
        setup = gateway.get_stage(main.setup_stage_id)
        return shop, other_detail, main, setup

    def test_setup_stage_created(self, changeover):
        shop, _, main, setup = changeover

        assert setup.is_setup
        assert setup.main_stage_id == main.id
        assert setup.machine_id == shop.machine.id
        assert setup.status == StageExecutionStatus.IN_QUEUE
        assert setup.planned_duration == timedelta(minutes=30)
        assert setup.priority == main.priority + 1

    def test_unknown_changeover_is_learned(self, changeover, gateway):
        shop, other_detail, main, _ = changeover

        entry = gateway.get_setup_time(shop.machine.id, other_detail.id, main.detail_id)

        assert entry is not None
        assert entry.hours == 0.5

    def test_main_stage_events(self, changeover, gateway):
        _, _, main, setup = changeover

        main_events = [e.event_type for e in gateway.get_events(main.id)]
        setup_events = [e.event_type for e in gateway.get_events(setup.id)]

        assert main_events[-1] == StageEventType.SETUP_REQUIRED
        assert setup_events == [StageEventType.CREATED]

    def test_main_waits_for_setup(self, changeover, engine):
        _, _, main, setup = changeover

        assert not engine.can_start_stage(main.id)
        assert engine.can_start_stage(setup.id)

    def test_completed_setup_starts_main(self, changeover, engine, state_machine, gateway):
        _, _, main, setup = changeover
        assert engine.start_pending_stage(setup.id, NOW)
        state_machine.complete(setup.id, OPERATOR, NOW + timedelta(minutes=30))

        engine.handle_stage_completion(setup.id, NOW + timedelta(minutes=31))

        started = gateway.get_stage(main.id)
        assert started.status == StageExecutionStatus.IN_PROGRESS
        assert started.start_time == NOW + timedelta(minutes=31)
        assert gateway.get_stage(setup.id).is_processed_by_scheduler

    def test_cancelled_setup_releases_main(self, changeover, engine, state_machine):
        _, _, main, setup = changeover

        state_machine.cancel(setup.id, OPERATOR, NOW)

        assert engine.can_start_stage(main.id)

    def test_rescheduling_keeps_machine_with_setup(self, changeover, engine):
        shop, _, main, _ = changeover

        machine = engine.schedule_stage_execution(main.id, NOW)

        assert machine.id == shop.machine.id


class TestStartAndCompletion:
    """Test starting stages and completion follow-up."""

    def test_start_pending_stage_on_busy_machine_returns_false(
        self, services, engine, state_machine, shop, gateway
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, parts=2, now=NOW)
        running, waiting = planned.stages[0], planned.stages[2]
        for stage in (running, waiting):
            state_machine.enqueue(stage.id, OPERATOR, NOW)
            state_machine.assign_machine(stage.id, shop.machine.id, OPERATOR, NOW)
        assert engine.start_pending_stage(running.id, NOW)

        assert engine.start_pending_stage(waiting.id, NOW) is False
        assert gateway.get_stage(waiting.id).status == StageExecutionStatus.IN_QUEUE

    def test_start_pending_stage_guard_violation_returns_false(
        self, services, engine, shop
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        assert engine.start_pending_stage(planned.stages[0].id, NOW) is False

    def test_can_start_stage(self, services, engine, shop):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        first, second = planned.stages

        assert engine.can_start_stage(first.id)
        assert not engine.can_start_stage(second.id)

    def test_completion_queues_next_stage(
        self, services, engine, state_machine, shop, gateway
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        first, second = planned.stages
        engine.schedule_stage_execution(first.id, NOW)
        engine.start_pending_stage(first.id, NOW)
        state_machine.complete(first.id, OPERATOR, NOW + timedelta(hours=1))

        engine.handle_stage_completion(first.id, NOW + timedelta(hours=1))

        follower = gateway.get_stage(second.id)
        assert follower.status == StageExecutionStatus.IN_QUEUE
        assert follower.machine_id == shop.machine.id
        assert follower.setup_stage_id is None
        assert gateway.get_stage(first.id).is_processed_by_scheduler

    def test_last_completion_finishes_batch(
        self, services, engine, state_machine, shop
    ):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        now = NOW
        for stage in planned.stages:
            engine.schedule_stage_execution(stage.id, now)
            engine.start_pending_stage(stage.id, now)
            now += timedelta(hours=1)
            state_machine.complete(stage.id, OPERATOR, now)
            engine.handle_stage_completion(stage.id, now)

        assert services.planner.is_batch_complete(planned.batch.id)

    def test_follow_up_ignores_unfinished_stage(self, services, engine, shop, gateway):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        engine.handle_stage_completion(planned.stages[0].id, NOW)

        assert not gateway.get_stage(planned.stages[0].id).is_processed_by_scheduler


class TestQueueOptimization:
    """Test deterministic per-machine queue ordering."""

    @pytest.fixture
    def queued(self, gateway, shop):
        machine_id = shop.machine.id
        early = NOW - timedelta(days=1)
        stages = [
            StageFactory.create_stage(
                status=StageExecutionStatus.IN_QUEUE,
                machine_id=machine_id,
                priority=priority,
                batch_created_at=batch_created_at,
                created_at=created_at,
            )
            for priority, batch_created_at, created_at in [
                (1, NOW, NOW),
                (5, NOW, NOW),
                (1, early, NOW),
                (1, NOW, NOW - timedelta(minutes=5)),
            ]
        ]
        gateway.add_stages(stages)
        return stages

    def test_order_and_positions(self, engine, queued, shop, gateway):
        result = engine.optimize_queue(NOW)

        expected = [queued[1].id, queued[2].id, queued[3].id, queued[0].id]
        assert result[shop.machine.id] == expected
        positions = [gateway.get_stage(sid).queue_position for sid in expected]
        assert positions == [1, 2, 3, 4]

    def test_reinvocation_is_stable(self, engine, queued, shop, gateway):
        first = engine.optimize_queue(NOW)
        second = engine.optimize_queue(NOW + timedelta(minutes=5))

        assert first == second
        for stage in queued:
            changes = [
                e
                for e in gateway.get_events(stage.id)
                if e.event_type == StageEventType.QUEUE_POSITION_CHANGED
            ]
            assert len(changes) == 1


class TestReleaseEstimate:
    """Test machine release time estimates."""

    def test_idle_machine_is_free_now(self, engine, shop):
        assert engine.estimate_machine_release_time(shop.machine.id, NOW) == NOW

    def test_running_and_queued_work(self, engine, shop, gateway):
        gateway.add_stages(
            [
                StageFactory.create_running_stage(
                    shop.machine.id, started_at=NOW - timedelta(minutes=30)
                ),
                StageFactory.create_stage(
                    status=StageExecutionStatus.IN_QUEUE,
                    machine_id=shop.machine.id,
                    norm_time_hours=0.2,
                ),
            ]
        )

        estimate = engine.estimate_machine_release_time(shop.machine.id, NOW)

        assert estimate == NOW + timedelta(hours=2, minutes=30)

    def test_overrunning_stage_counts_minimum_remaining(self, engine, shop, gateway):
        gateway.add_stages(
            [
                StageFactory.create_running_stage(
                    shop.machine.id, started_at=NOW - timedelta(hours=5)
                )
            ]
        )

        estimate = engine.estimate_machine_release_time(shop.machine.id, NOW)

        assert estimate == NOW + timedelta(minutes=5)


queue_entries = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=9),
        st.integers(min_value=0, max_value=3),
        st.integers(min_value=0, max_value=3),
    ),
    min_size=1,
    max_size=8,
)


class TestQueueDeterminism:
    """Property tests for queue ordering."""

    @staticmethod
    def _optimized(stages, machine_id):
        gateway = InMemoryProductionGateway()
        gateway.add_stages(stages)
        services = build_scheduling_services(
            gateway=gateway,
            config=Settings(MACHINE_LOCK_BACKEND="local"),
            locks=MachineLockRegistry(blocking_timeout=1.0),
            clock=FakeClock(),
        )
        return services.engine.optimize_queue(NOW)[machine_id]

    @given(queue_entries, st.data())
    @settings(max_examples=30, deadline=None)
    def test_order_independent_of_storage_order(self, entries, data):
        machine_id = uuid4()
        stages = [
            StageFactory.create_stage(
                status=StageExecutionStatus.IN_QUEUE,
                machine_id=machine_id,
                priority=priority,
                batch_created_at=NOW + timedelta(hours=batch_offset),
                created_at=NOW + timedelta(minutes=created_offset),
            )
            for priority, batch_offset, created_offset in entries
        ]
        shuffled = data.draw(st.permutations(stages))

        order = self._optimized(stages, machine_id)

        assert order == self._optimized(shuffled, machine_id)
        by_id = {s.id: s for s in stages}
        priorities = [by_id[sid].priority for sid in order]
        assert priorities == sorted(priorities, reverse=True)
