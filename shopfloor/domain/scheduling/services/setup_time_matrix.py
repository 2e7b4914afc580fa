"""
Setup Time Matrix Service

Resolves sequence-dependent changeover durations between two details on a
machine, falling back to the route stage default when the matrix has no
entry and learning that default for later lookups.
"""

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from ....core.observability import get_logger
from ..entities.machine import Machine
from ..entities.setup_time import SetupTime
from ..entities.stage_execution import StageExecution
from ..repositories.persistence_gateway import ProductionGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class SetupLookup:
    """Matrix lookup result; ``found`` is False when the entry is unknown."""

    duration: timedelta
    found: bool

    @property
    def hours(self) -> float:
        return self.duration.total_seconds() / 3600


@dataclass(frozen=True)
class SetupRequirement:
    """Whether a stage needs a changeover on a machine, and how long it takes."""

    required: bool
    hours: float
    found: bool
    from_detail_id: UUID | None = None


NO_SETUP = SetupRequirement(required=False, hours=0.0, found=True)


class SetupTimeMatrix:
    """Service answering changeover questions against the persistence gateway."""

    def __init__(self, gateway: ProductionGateway) -> None:
        self._gateway = gateway

    def lookup(
        self, machine_id: UUID, from_detail_id: UUID | None, to_detail_id: UUID
    ) -> SetupLookup:
        """
        Look up the changeover duration on a machine.

        No setup is charged when the machine has no prior detail or the
        detail does not change. A missing entry is reported as not found
        with a zero duration; callers decide the fallback.

        Args:
            machine_id: Machine identifier
            from_detail_id: Detail last processed, or None for a fresh machine
            to_detail_id: Detail about to be processed

        Returns:
            SetupLookup with duration and whether an entry exists
        """
        if from_detail_id is None or from_detail_id == to_detail_id:
            return SetupLookup(duration=timedelta(0), found=True)

        entry = self._gateway.get_setup_time(machine_id, from_detail_id, to_detail_id)
        if entry is None:
            return SetupLookup(duration=timedelta(0), found=False)
        return SetupLookup(duration=timedelta(hours=entry.hours), found=True)

    def last_detail_on_machine(self, machine_id: UUID) -> UUID | None:
        return self._gateway.get_last_detail_on_machine(machine_id)

    def required_setup(self, machine: Machine, stage: StageExecution) -> SetupRequirement:
        """
        Determine the changeover needed to run ``stage`` on ``machine``.

        Unknown matrix entries fall back to the stage's default setup hours.
        """
        from_detail_id = self.last_detail_on_machine(machine.id)
        if from_detail_id is None or from_detail_id == stage.detail_id:
            return NO_SETUP

        result = self.lookup(machine.id, from_detail_id, stage.detail_id)
        hours = result.hours if result.found else stage.setup_time_hours
        return SetupRequirement(
            required=True,
            hours=hours,
            found=result.found,
            from_detail_id=from_detail_id,
        )

    def remember(
        self, machine_id: UUID, from_detail_id: UUID, to_detail_id: UUID, hours: float
    ) -> SetupTime:
        """Store a learned matrix entry so later lookups hit."""
        entry = SetupTime(
            machine_id=machine_id,
            from_detail_id=from_detail_id,
            to_detail_id=to_detail_id,
            hours=hours,
        )
        saved = self._gateway.save_setup_time(entry)
        logger.info(
            "Learned setup time",
            machine_id=str(machine_id),
            from_detail_id=str(from_detail_id),
            to_detail_id=str(to_detail_id),
            hours=hours,
        )
        return saved
