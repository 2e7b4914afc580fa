"""
Service Dependencies for Domain Service Injection.

Wires the gateway, machine locks, shift calendar and domain services into
one ``SchedulingServices`` bundle for workers and administrative tooling.
"""

from dataclasses import dataclass
from functools import lru_cache

from ..core.config import Settings, settings
from ..core.machine_locks import build_machine_lock_registry
from ..domain.scheduling.repositories.persistence_gateway import ProductionGateway
from ..domain.scheduling.services.batch_planner import BatchPlanner
from ..domain.scheduling.services.reconciliation_loop import (
    ReconciliationLoop,
    ReconciliationOptions,
)
from ..domain.scheduling.services.scheduling_engine import SchedulingEngine
from ..domain.scheduling.services.setup_time_matrix import SetupTimeMatrix
from ..domain.scheduling.services.stage_state_machine import (
    ContinuationPolicy,
    StageStateMachine,
)
from ..domain.scheduling.value_objects.shift_calendar import ShiftCalendar
from .database.engine import build_session_factory, create_db_engine, init_db
from .database.sqlmodel_gateway import SqlModelProductionGateway


@dataclass
class SchedulingServices:
    gateway: ProductionGateway
    calendar: ShiftCalendar
    state_machine: StageStateMachine
    setup_matrix: SetupTimeMatrix
    planner: BatchPlanner
    engine: SchedulingEngine
    loop: ReconciliationLoop


def build_scheduling_services(
    gateway: ProductionGateway | None = None,
    config: Settings = settings,
    locks=None,
    clock=None,
) -> SchedulingServices:
    """
    Build the full service graph.

    Args:
        gateway: Persistence gateway; defaults to the SQL gateway on DATABASE_URL
        config: Settings to read calendar, lock and loop parameters from
        locks: Machine lock registry; defaults to MACHINE_LOCK_BACKEND
        clock: Optional naive UTC clock, mainly for tests

    Returns:
        SchedulingServices bundle
    """
    if gateway is None:
        engine = create_db_engine(config.DATABASE_URL)
        init_db(engine)
        gateway = SqlModelProductionGateway(build_session_factory(engine))
    if locks is None:
        locks = build_machine_lock_registry(config)
    clock_kwargs = {"clock": clock} if clock is not None else {}

    calendar = ShiftCalendar.from_settings(config)
    policy = ContinuationPolicy.from_settings(config)
    state_machine = StageStateMachine(gateway, locks, calendar, policy, **clock_kwargs)
    setup_matrix = SetupTimeMatrix(gateway)
    planner = BatchPlanner(gateway, **clock_kwargs)
    engine = SchedulingEngine(
        gateway,
        state_machine,
        setup_matrix,
        planner,
        operator_id=config.SYSTEM_OPERATOR_ID,
        device_id=config.SYSTEM_DEVICE_ID,
        **clock_kwargs,
    )
    loop = ReconciliationLoop(
        gateway,
        engine,
        state_machine,
        calendar,
        policy=policy,
        options=ReconciliationOptions.from_settings(config),
        operator_id=config.SYSTEM_OPERATOR_ID,
        device_id=config.SYSTEM_DEVICE_ID,
        **clock_kwargs,
    )
    return SchedulingServices(
        gateway=gateway,
        calendar=calendar,
        state_machine=state_machine,
        setup_matrix=setup_matrix,
        planner=planner,
        engine=engine,
        loop=loop,
    )


@lru_cache(maxsize=1)
def get_scheduling_services() -> SchedulingServices:
    """Process-wide services for worker tasks."""
    return build_scheduling_services()
