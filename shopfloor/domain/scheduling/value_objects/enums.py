"""Domain enums for scheduling."""

from enum import Enum


class StageExecutionStatus(str, Enum):
    """Stage execution status enumeration."""

    PENDING = "pending"  # Created, waiting on predecessors or evaluation
    IN_QUEUE = "in_queue"  # Predecessors done, waiting for a machine to start
    IN_PROGRESS = "in_progress"  # Running on its machine
    PAUSED = "paused"  # Interrupted, machine released
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"  # Unrecoverable fault, needs manual reset

    @property
    def is_terminal(self) -> bool:
        """Check if stage status is terminal."""
        return self in {StageExecutionStatus.COMPLETED, StageExecutionStatus.CANCELLED}

    @property
    def is_schedulable(self) -> bool:
        """Check if the stage is still waiting to be started."""
        return self in {StageExecutionStatus.PENDING, StageExecutionStatus.IN_QUEUE}

    @property
    def holds_machine(self) -> bool:
        """Check if the stage occupies its machine exclusively."""
        return self == StageExecutionStatus.IN_PROGRESS

    def can_transition_to(self, target_status: "StageExecutionStatus") -> bool:
        """Check if stage can transition from current status to target status."""
        valid_transitions = {
            StageExecutionStatus.PENDING: {
                StageExecutionStatus.IN_QUEUE,
                StageExecutionStatus.IN_PROGRESS,
                StageExecutionStatus.CANCELLED,
                StageExecutionStatus.ERROR,
            },
            StageExecutionStatus.IN_QUEUE: {
                StageExecutionStatus.IN_PROGRESS,
                StageExecutionStatus.CANCELLED,
                StageExecutionStatus.ERROR,
            },
            StageExecutionStatus.IN_PROGRESS: {
                StageExecutionStatus.PAUSED,
                StageExecutionStatus.COMPLETED,
                StageExecutionStatus.CANCELLED,
                StageExecutionStatus.ERROR,
            },
            StageExecutionStatus.PAUSED: {
                StageExecutionStatus.IN_PROGRESS,
                StageExecutionStatus.COMPLETED,
                StageExecutionStatus.CANCELLED,
                StageExecutionStatus.ERROR,
            },
            StageExecutionStatus.COMPLETED: {StageExecutionStatus.ERROR},
            StageExecutionStatus.CANCELLED: {StageExecutionStatus.ERROR},
            StageExecutionStatus.ERROR: {StageExecutionStatus.PENDING},  # Manual reset
        }
        return target_status in valid_transitions.get(self, set())


class StageEventType(str, Enum):
    """Audit event types recorded for stage executions."""

    CREATED = "created"
    QUEUED = "queued"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    RESET = "reset"
    SETUP_REQUIRED = "setup_required"
    QUEUE_POSITION_CHANGED = "queue_position_changed"
