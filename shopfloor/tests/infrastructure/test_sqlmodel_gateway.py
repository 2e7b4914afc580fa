"""
SQLModel Gateway Tests

Runs the production gateway against an in-memory SQLite database: reads,
versioned writes, the one-running-stage-per-machine index, and a full
scheduling pass through the service graph.
"""

from datetime import timedelta

import pytest
from sqlalchemy import text

from shopfloor.domain.scheduling.entities import SetupTime, StageEvent
from shopfloor.domain.scheduling.value_objects import (
    Attribution,
    StageEventType,
    StageExecutionStatus,
)
from shopfloor.domain.shared.exceptions import (
    ConcurrencyError,
    MachineOccupiedError,
    StageNotFoundError,
)
from shopfloor.infrastructure.database import (
    SqlModelProductionGateway,
    SqlModelUnitOfWork,
    build_session_factory,
    create_db_engine,
    init_db,
)

from ..factories import MONDAY_MORNING_UTC, StageFactory, seed_shop

NOW = MONDAY_MORNING_UTC
OPERATOR = Attribution.manual("op-17")


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(db_engine):
    """Overrides the in-memory gateway so the service graph runs on SQL."""
    return SqlModelProductionGateway(build_session_factory(db_engine))


class TestDatabaseSetup:
    """Test engine creation and schema setup."""

    def test_in_memory_engine_shares_one_database(self, db_engine):
        """Test that separate sessions see the same in-memory tables."""
        factory = build_session_factory(db_engine)
        with SqlModelUnitOfWork(factory) as uow:
            uow.session.execute(
                text("CREATE TABLE probe (value INTEGER)")
            )
            uow.session.execute(text("INSERT INTO probe VALUES (7)"))
        with SqlModelUnitOfWork(factory) as uow:
            assert uow.session.execute(text("SELECT value FROM probe")).scalar() == 7

    def test_tables_created(self, db_engine):
        with db_engine.connect() as connection:
            names = {
                row[0]
                for row in connection.execute(
                    text("SELECT name FROM sqlite_master WHERE type = 'table'")
                )
            }
        assert {"stage_executions", "stage_events", "setup_times", "machines"} <= names

    def test_unit_of_work_rolls_back_on_error(self, db_engine):
        factory = build_session_factory(db_engine)
        with SqlModelUnitOfWork(factory) as uow:
            uow.session.execute(text("CREATE TABLE probe (value INTEGER)"))

        with pytest.raises(RuntimeError):
            with SqlModelUnitOfWork(factory) as uow:
                uow.session.execute(text("INSERT INTO probe VALUES (1)"))
                raise RuntimeError("abort")

        with SqlModelUnitOfWork(factory) as uow:
            assert uow.session.execute(text("SELECT COUNT(*) FROM probe")).scalar() == 0


class TestReferenceData:
    """Test seeding and reading reference data."""

    def test_seeded_shop_round_trips(self, gateway):
        shop = seed_shop(gateway, machine_count=2, norm_times=(0.1, 0.2, 0.3))

        assert gateway.get_detail(shop.detail.id).name == shop.detail.name
        machines = gateway.get_machines_by_type(shop.machine_type.id)
        assert [m.name for m in machines] == ["Lathe-01", "Lathe-02"]
        assert gateway.get_machine(shop.machine.id).machine_type_id == shop.machine_type.id

        route = gateway.get_route_for_detail(shop.detail.id)
        assert route.id == shop.route.id
        assert [s.order for s in route.stages] == [1, 2, 3]
        assert [s.norm_time_hours for s in route.stages] == [0.1, 0.2, 0.3]

    def test_missing_reference_data(self, gateway):
        stage = StageFactory.create_stage()

        assert gateway.get_detail(stage.detail_id) is None
        assert gateway.get_route_for_detail(stage.detail_id) is None
        assert gateway.get_machine(stage.machine_type_id) is None
        assert gateway.get_batch(stage.batch_id) is None

    def test_planned_batch_round_trips(self, services, shop, gateway):
        planned = services.planner.plan_batch(shop.detail.id, 10, parts=3, now=NOW)

        batch = gateway.get_batch(planned.batch.id)

        assert batch.quantity == 10
        assert sorted(sb.quantity for sb in batch.sub_batches) == [3, 3, 4]
        assert len(gateway.get_stages_for_batch(batch.id)) == 6


class TestStageWrites:
    """Test versioned stage updates."""

    def test_save_increments_version(self, gateway):
        stage = StageFactory.create_stage()
        gateway.add_stages([stage])

        loaded = gateway.get_stage(stage.id)
        loaded.priority = 5
        saved = gateway.save_stage(loaded)

        assert saved.version == 1
        reloaded = gateway.get_stage(stage.id)
        assert reloaded.version == 1
        assert reloaded.priority == 5

    def test_stale_write_rejected(self, gateway):
        """Test that a write based on an outdated version raises ConcurrencyError."""
        stage = StageFactory.create_stage()
        gateway.add_stages([stage])
        fresh = gateway.get_stage(stage.id)
        stale = gateway.get_stage(stage.id)

        fresh.priority = 5
        gateway.save_stage(fresh)
        stale.priority = 7

        with pytest.raises(ConcurrencyError):
            gateway.save_stage(stale)
        assert gateway.get_stage(stage.id).priority == 5

    def test_save_unknown_stage(self, gateway):
        with pytest.raises(StageNotFoundError):
            gateway.save_stage(StageFactory.create_stage())

    def test_second_running_stage_on_machine_rejected(self, gateway):
        """Test that the partial unique index keeps one running stage per machine."""
        shop = seed_shop(gateway)
        running = StageFactory.create_running_stage(shop.machine.id, started_at=NOW)
        waiting = StageFactory.create_stage(
            status=StageExecutionStatus.IN_QUEUE, machine_id=shop.machine.id
        )
        gateway.add_stages([running, waiting])

        contender = gateway.get_stage(waiting.id)
        contender.status = StageExecutionStatus.IN_PROGRESS
        contender.start_time = NOW

        with pytest.raises(MachineOccupiedError):
            gateway.save_stage(contender)
        assert gateway.get_stage(waiting.id).status == StageExecutionStatus.IN_QUEUE

    def test_events_saved_with_stage(self, gateway):
        stage = StageFactory.create_stage()
        gateway.add_stages([stage])
        loaded = gateway.get_stage(stage.id)
        event = loaded.enqueue(OPERATOR, NOW)

        gateway.save_stage(loaded, events=[event])
        gateway.record_event(
            StageEvent(
                stage_execution_id=stage.id,
                event_type=StageEventType.QUEUE_POSITION_CHANGED,
                new_status=StageExecutionStatus.IN_QUEUE,
                event_time=NOW + timedelta(minutes=1),
                operator_id="op-17",
            )
        )

        events = gateway.get_events(stage.id)
        assert [e.event_type for e in events] == [
            StageEventType.QUEUED,
            StageEventType.QUEUE_POSITION_CHANGED,
        ]
        assert events[0].previous_status == StageExecutionStatus.PENDING


class TestStageReads:
    """Test the stage queries used by the reconciliation loop."""

    def test_status_queries(self, gateway):
        shop = seed_shop(gateway, machine_count=2)
        first, second = shop.machines
        running = StageFactory.create_running_stage(first.id, started_at=NOW)
        queued = StageFactory.create_stage(
            status=StageExecutionStatus.IN_QUEUE, machine_id=first.id
        )
        pending = StageFactory.create_stage()
        system_paused = StageFactory.create_stage(
            status=StageExecutionStatus.PAUSED, machine_id=second.id
        )
        system_paused.paused_by_system = True
        operator_paused = StageFactory.create_stage(
            status=StageExecutionStatus.PAUSED, machine_id=second.id
        )
        gateway.add_stages([running, queued, pending, system_paused, operator_paused])

        assert [s.id for s in gateway.get_in_progress_stages()] == [running.id]
        assert gateway.get_in_progress_on_machine(first.id).id == running.id
        assert gateway.get_in_progress_on_machine(second.id) is None
        assert [s.id for s in gateway.get_queued_stages()] == [queued.id]
        assert [s.id for s in gateway.get_pending_stages()] == [pending.id]
        assert [s.id for s in gateway.get_stages_queued_for_machine(first.id)] == [
            queued.id
        ]
        assert [s.id for s in gateway.get_paused_stages(by_system=True)] == [
            system_paused.id
        ]
        assert len(gateway.get_paused_stages()) == 2

    def test_recently_completed_unprocessed(self, gateway):
        shop = seed_shop(gateway)
        old = StageFactory.create_completed_stage(
            shop.machine.id, shop.detail.id, NOW - timedelta(hours=3)
        )
        recent = StageFactory.create_completed_stage(
            shop.machine.id, shop.detail.id, NOW - timedelta(minutes=10)
        )
        old.is_processed_by_scheduler = False
        recent.is_processed_by_scheduler = False
        gateway.add_stages([old, recent])

        since = NOW - timedelta(hours=1)
        assert [s.id for s in gateway.get_recently_completed_unprocessed(since)] == [
            recent.id
        ]

        gateway.mark_stage_processed(recent.id)

        assert gateway.get_recently_completed_unprocessed(since) == []
        assert gateway.get_stage(recent.id).is_processed_by_scheduler

    def test_last_detail_skips_setup_stages(self, gateway):
        shop = seed_shop(gateway)
        other = StageFactory.create_stage().detail_id
        gateway.add_stages(
            [
                StageFactory.create_completed_stage(
                    shop.machine.id, shop.detail.id, NOW - timedelta(hours=2)
                ),
                StageFactory.create_completed_stage(
                    shop.machine.id, other, NOW - timedelta(hours=1), is_setup=True
                ),
            ]
        )

        assert gateway.get_last_detail_on_machine(shop.machine.id) == shop.detail.id

    def test_completed_stages_for_detail(self, gateway):
        shop = seed_shop(gateway)
        other = StageFactory.create_stage().detail_id
        old = StageFactory.create_completed_stage(
            shop.machine.id, shop.detail.id, NOW - timedelta(days=100)
        )
        later = StageFactory.create_completed_stage(
            shop.machine.id, shop.detail.id, NOW - timedelta(days=2)
        )
        earlier = StageFactory.create_completed_stage(
            shop.machine.id, shop.detail.id, NOW - timedelta(days=5)
        )
        foreign = StageFactory.create_completed_stage(
            shop.machine.id, other, NOW - timedelta(days=1)
        )
        running = StageFactory.create_running_stage(
            shop.machine.id, NOW - timedelta(hours=1), detail_id=shop.detail.id
        )
        gateway.add_stages([old, later, earlier, foreign, running])

        history = gateway.get_completed_stages_for_detail(
            shop.detail.id, since=NOW - timedelta(days=90)
        )

        assert [s.id for s in history] == [earlier.id, later.id]

    def test_setup_time_upsert(self, gateway):
        shop = seed_shop(gateway)
        to_detail = StageFactory.create_stage().detail_id
        gateway.save_setup_time(
            SetupTime(
                machine_id=shop.machine.id,
                from_detail_id=shop.detail.id,
                to_detail_id=to_detail,
                hours=0.5,
            )
        )
        gateway.save_setup_time(
            SetupTime(
                machine_id=shop.machine.id,
                from_detail_id=shop.detail.id,
                to_detail_id=to_detail,
                hours=1.5,
            )
        )

        entry = gateway.get_setup_time(shop.machine.id, shop.detail.id, to_detail)
        assert entry.hours == 1.5
        assert gateway.get_setup_time(shop.machine.id, to_detail, shop.detail.id) is None


class TestSchedulingOnDatabase:
    """Test the service graph end to end on the SQL gateway."""

    def test_tick_starts_and_completes_route(self, services, shop, gateway):
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)
        first, second = planned.stages

        services.loop.run_tick(NOW)

        running = gateway.get_stage(first.id)
        assert running.status == StageExecutionStatus.IN_PROGRESS
        assert running.machine_id == shop.machine.id

        report = services.loop.run_tick(NOW + timedelta(hours=4))

        assert report.total_errors == 0
        assert gateway.get_stage(first.id).status == StageExecutionStatus.COMPLETED
        assert gateway.get_stage(second.id).status == StageExecutionStatus.IN_PROGRESS
        events = gateway.get_events(first.id)
        assert {e.event_type for e in events} == {
            StageEventType.CREATED,
            StageEventType.QUEUED,
            StageEventType.ASSIGNED,
            StageEventType.STARTED,
            StageEventType.COMPLETED,
        }
        assert events[-1].event_type == StageEventType.COMPLETED
        assert events[-1].is_automatic

    def test_changeover_learned_on_database(self, services, shop, gateway):
        previous = StageFactory.create_stage().detail_id
        gateway.add_stages(
            [
                StageFactory.create_completed_stage(
                    shop.machine.id, previous, NOW - timedelta(hours=1)
                )
            ]
        )
        planned = services.planner.plan_batch(shop.detail.id, 10, now=NOW)

        services.engine.schedule_stage_execution(planned.stages[0].id, NOW)

        main = gateway.get_stage(planned.stages[0].id)
        assert main.setup_stage_id is not None
        setup = gateway.get_stage(main.setup_stage_id)
        assert setup.is_setup
        assert setup.machine_id == shop.machine.id
        learned = gateway.get_setup_time(shop.machine.id, previous, shop.detail.id)
        assert learned.hours == 0.5
