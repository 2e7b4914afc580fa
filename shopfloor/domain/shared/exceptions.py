"""
Domain Exceptions

Typed error hierarchy for the scheduling engine. Every error carries an
``ErrorType`` discriminator so callers (loop phases, admin tooling, Celery
tasks) can decide whether a failure is a transient race, a guard violation,
a missing resource or an infrastructure problem.
"""

from enum import Enum
from uuid import UUID


class ErrorType(str, Enum):
    """Error type enumeration for discriminated unions."""

    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    RESOURCE_CONFLICT = "resource_conflict"
    NOT_FOUND = "not_found"
    REPOSITORY = "repository"
    CONCURRENCY = "concurrency"


class DomainError(Exception):
    """Base class for all domain errors with type discrimination."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        details: dict[str, str | int | float | bool | None] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details or {}

    def to_dict(self) -> dict[str, str | dict[str, str | int | float | bool | None]]:
        """Convert error to dictionary for logs and admin responses."""
        return {
            "type": self.error_type.value,
            "message": self.message,
            "details": self.details,
        }


class BusinessRuleViolation(DomainError):
    """Raised when a business rule (transition guard) is violated."""

    def __init__(
        self,
        rule_name: str,
        message: str,
        details: dict[str, str | int | float | bool | None] | None = None,
    ) -> None:
        rule_details = dict(details or {})
        rule_details["rule"] = rule_name
        super().__init__(
            f"Business rule '{rule_name}' violated: {message}",
            ErrorType.BUSINESS_RULE,
            rule_details,
        )
        self.rule_name = rule_name


class InvalidStatusTransitionError(BusinessRuleViolation):
    """Raised when a stage cannot move from its current status to the target."""

    def __init__(self, stage_id: UUID, current: str, attempted: str) -> None:
        super().__init__(
            "INVALID_STATUS_TRANSITION",
            f"Stage {stage_id} cannot transition from {current} to {attempted}",
            {"stage_id": str(stage_id), "current": current, "attempted": attempted},
        )
        self.stage_id = stage_id
        self.current = current
        self.attempted = attempted


class PredecessorNotCompletedError(BusinessRuleViolation):
    """Raised when a route-order predecessor (or setup stage) is not completed."""

    def __init__(self, stage_id: UUID, blocking_stage_id: UUID | None = None) -> None:
        super().__init__(
            "PREDECESSOR_NOT_COMPLETED",
            f"Stage {stage_id} has an uncompleted predecessor",
            {
                "stage_id": str(stage_id),
                "blocking_stage_id": str(blocking_stage_id)
                if blocking_stage_id
                else None,
            },
        )
        self.stage_id = stage_id
        self.blocking_stage_id = blocking_stage_id


class ResourceConflictError(DomainError):
    """Raised when resource conflicts occur (double booking, etc.)."""

    def __init__(
        self,
        message: str,
        details: dict[str, str | int | float | bool | None] | None = None,
    ) -> None:
        super().__init__(message, ErrorType.RESOURCE_CONFLICT, details)


class MachineOccupiedError(ResourceConflictError):
    """Raised when a machine already runs a different stage."""

    def __init__(self, machine_id: UUID, occupying_stage_id: UUID | None = None) -> None:
        super().__init__(
            f"Machine {machine_id} is occupied",
            {
                "machine_id": str(machine_id),
                "occupying_stage_id": str(occupying_stage_id)
                if occupying_stage_id
                else None,
            },
        )
        self.machine_id = machine_id
        self.occupying_stage_id = occupying_stage_id


class NoEligibleMachineError(ResourceConflictError):
    """Raised when no free machine of the required type exists."""

    def __init__(self, stage_id: UUID, machine_type_id: UUID) -> None:
        super().__init__(
            f"No free machine of type {machine_type_id} for stage {stage_id}",
            {"stage_id": str(stage_id), "machine_type_id": str(machine_type_id)},
        )
        self.stage_id = stage_id
        self.machine_type_id = machine_type_id


class EntityNotFoundError(DomainError):
    """Raised when a referenced entity does not exist."""

    entity_type = "entity"

    def __init__(self, entity_id: UUID) -> None:
        super().__init__(
            f"{self.entity_type.capitalize()} not found: {entity_id}",
            ErrorType.NOT_FOUND,
            {"entity_type": self.entity_type, "entity_id": str(entity_id)},
        )
        self.entity_id = entity_id


class StageNotFoundError(EntityNotFoundError):
    entity_type = "stage execution"


class MachineNotFoundError(EntityNotFoundError):
    entity_type = "machine"


class DetailNotFoundError(EntityNotFoundError):
    entity_type = "detail"


class RouteNotFoundError(EntityNotFoundError):
    entity_type = "route"


class BatchNotFoundError(EntityNotFoundError):
    entity_type = "batch"


class BatchPlanningError(DomainError):
    """Raised when a batch request cannot be decomposed into sub-batches."""

    def __init__(
        self,
        message: str,
        details: dict[str, str | int | float | bool | None] | None = None,
    ) -> None:
        super().__init__(message, ErrorType.VALIDATION, details)


class ConcurrencyError(DomainError):
    """Raised when a stage was modified by someone else since it was read."""

    def __init__(self, stage_id: UUID, expected_version: int) -> None:
        super().__init__(
            f"Stage {stage_id} was modified concurrently (expected version {expected_version})",
            ErrorType.CONCURRENCY,
            {"stage_id": str(stage_id), "expected_version": expected_version},
        )
        self.stage_id = stage_id
        self.expected_version = expected_version


class MachineLockTimeoutError(DomainError):
    """Raised when the per-machine mutex could not be acquired in time."""

    def __init__(self, machine_id: UUID, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds}s waiting for machine {machine_id}",
            ErrorType.CONCURRENCY,
            {"machine_id": str(machine_id), "timeout_seconds": timeout_seconds},
        )
        self.machine_id = machine_id


class RepositoryError(DomainError):
    """Raised when the persistence gateway fails."""

    def __init__(
        self,
        message: str,
        details: dict[str, str | int | float | bool | None] | None = None,
    ) -> None:
        super().__init__(message, ErrorType.REPOSITORY, details)
