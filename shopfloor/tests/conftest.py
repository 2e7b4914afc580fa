import pytest

from shopfloor.core.config import Settings
from shopfloor.core.machine_locks import MachineLockRegistry
from shopfloor.domain.scheduling.value_objects import ShiftCalendar
from shopfloor.infrastructure.database import InMemoryProductionGateway
from shopfloor.infrastructure.service_dependencies import build_scheduling_services

from .factories import FakeClock, seed_shop


@pytest.fixture
def test_settings() -> Settings:
    """Settings with the default shift calendar and local machine locks."""
    return Settings(
        DATABASE_URL="sqlite://",
        MACHINE_LOCK_BACKEND="local",
        MACHINE_LOCK_BLOCKING_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def calendar() -> ShiftCalendar:
    return ShiftCalendar()


@pytest.fixture
def gateway() -> InMemoryProductionGateway:
    return InMemoryProductionGateway()


@pytest.fixture
def locks() -> MachineLockRegistry:
    return MachineLockRegistry(blocking_timeout=2.0)


@pytest.fixture
def services(gateway, locks, clock, test_settings):
    """Full service graph on the in-memory gateway."""
    return build_scheduling_services(
        gateway=gateway, config=test_settings, locks=locks, clock=clock
    )


@pytest.fixture
def shop(gateway):
    """One detail with a two-stage route and a single machine."""
    return seed_shop(gateway)
