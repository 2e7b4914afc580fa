"""
Production Gateway Interface

Defines the persistence contract consumed by the scheduling engine: stage
reads and versioned writes, the audit trail, setup-time records and the
reference data needed for planning.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from ..entities.batch import Batch
from ..entities.detail import Detail
from ..entities.machine import Machine
from ..entities.route import Route
from ..entities.setup_time import SetupTime
from ..entities.stage_event import StageEvent
from ..entities.stage_execution import StageExecution


class ProductionGateway(ABC):
    """
    Abstract gateway for stage execution state and its reference data.

    Every read returns detached copies; callers mutate them through the
    entity transition methods and hand them back to ``save_stage``.
    """

    # Stage reads

    @abstractmethod
    def get_stage(self, stage_id: UUID) -> StageExecution | None:
        """
        Retrieve a stage execution by its ID.

        Args:
            stage_id: Unique stage execution identifier

        Returns:
            StageExecution or None if not found

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_in_progress_stages(self) -> list[StageExecution]:
        """
        Retrieve all stages currently in progress.

        Returns:
            List of in-progress stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_queued_stages(self) -> list[StageExecution]:
        """
        Retrieve all stages in the queue, in no particular order.

        Returns:
            List of queued stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_pending_stages(self) -> list[StageExecution]:
        """
        Retrieve all pending stages.

        Returns:
            List of pending stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_paused_stages(self, by_system: bool | None = None) -> list[StageExecution]:
        """
        Retrieve paused stages.

        Args:
            by_system: Only system-paused (True), only manually paused
                (False), or all paused stages (None)

        Returns:
            List of paused stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_recently_completed_unprocessed(self, since: datetime) -> list[StageExecution]:
        """
        Retrieve completed stages not yet followed up by the scheduler.

        Args:
            since: Only stages whose end time is at or after this instant

        Returns:
            List of completed, unprocessed stages ordered by end time

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_in_progress_on_machine(self, machine_id: UUID) -> StageExecution | None:
        """
        Retrieve the stage currently running on a machine.

        Args:
            machine_id: Machine identifier

        Returns:
            The in-progress stage or None if the machine is free

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_stages_queued_for_machine(self, machine_id: UUID) -> list[StageExecution]:
        """
        Retrieve pending or queued stages already assigned to a machine.

        Args:
            machine_id: Machine identifier

        Returns:
            List of assigned, not yet started stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_stages_for_sub_batch(self, sub_batch_id: UUID) -> list[StageExecution]:
        """
        Retrieve all stages of a sub-batch, setup stages included.

        Args:
            sub_batch_id: Sub-batch identifier

        Returns:
            List of stages ordered by route order

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_stages_for_batch(self, batch_id: UUID) -> list[StageExecution]:
        """
        Retrieve all stages of every sub-batch of a batch.

        Args:
            batch_id: Batch identifier

        Returns:
            List of stages

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_completed_stages_for_detail(
        self, detail_id: UUID, since: datetime
    ) -> list[StageExecution]:
        """
        Retrieve the production history of a detail.

        Args:
            detail_id: Detail identifier
            since: Only stages whose end time is at or after this instant

        Returns:
            Completed stages, setup stages included, ordered by end time

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    # Stage writes

    @abstractmethod
    def add_stages(
        self, stages: list[StageExecution], events: list[StageEvent] | None = None
    ) -> None:
        """
        Persist newly created stages together with their events.

        Args:
            stages: New stage executions
            events: Stage events written in the same transaction

        Raises:
            RepositoryError: If the insert fails
        """
        pass

    @abstractmethod
    def save_stage(
        self, stage: StageExecution, events: list[StageEvent] | None = None
    ) -> StageExecution:
        """
        Persist changes to an existing stage.

        The write succeeds only if the stored version equals
        ``stage.version``; the stored and returned version is then bumped.
        Events are appended in the same transaction.

        Args:
            stage: Modified stage execution
            events: Stage events describing the change

        Returns:
            Saved stage with its new version

        Raises:
            StageNotFoundError: If the stage does not exist
            ConcurrencyError: If the stage was modified since it was read
            MachineOccupiedError: If another stage is already in progress
                on the same machine
            RepositoryError: If the update fails
        """
        pass

    @abstractmethod
    def mark_stage_processed(self, stage_id: UUID) -> None:
        """
        Flag a completed stage as followed up by the scheduler.

        Args:
            stage_id: Stage execution identifier

        Raises:
            RepositoryError: If the update fails
        """
        pass

    @abstractmethod
    def record_event(self, event: StageEvent) -> None:
        """
        Append a stage event to the audit trail.

        Args:
            event: Stage event

        Raises:
            RepositoryError: If the insert fails
        """
        pass

    @abstractmethod
    def get_events(self, stage_id: UUID) -> list[StageEvent]:
        """
        Retrieve the audit trail of a stage, oldest first.

        Args:
            stage_id: Stage execution identifier

        Returns:
            List of stage events

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    # Setup times and machines

    @abstractmethod
    def get_setup_time(
        self, machine_id: UUID, from_detail_id: UUID, to_detail_id: UUID
    ) -> SetupTime | None:
        """
        Retrieve a setup matrix entry.

        Args:
            machine_id: Machine identifier
            from_detail_id: Detail last processed on the machine
            to_detail_id: Detail about to be processed

        Returns:
            SetupTime or None if the matrix has no entry

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def save_setup_time(self, entry: SetupTime) -> SetupTime:
        """
        Insert or replace a setup matrix entry.

        Args:
            entry: Setup time entry

        Returns:
            Saved entry

        Raises:
            RepositoryError: If save operation fails
        """
        pass

    @abstractmethod
    def get_last_detail_on_machine(self, machine_id: UUID) -> UUID | None:
        """
        Retrieve the detail of the most recent completed, non-setup stage.

        Args:
            machine_id: Machine identifier

        Returns:
            Detail ID or None if the machine has no completed work

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_machine(self, machine_id: UUID) -> Machine | None:
        """
        Retrieve a machine by its ID.

        Args:
            machine_id: Machine identifier

        Returns:
            Machine or None if not found

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    @abstractmethod
    def get_machines_by_type(self, machine_type_id: UUID) -> list[Machine]:
        """
        Retrieve all machines of a machine type.

        Args:
            machine_type_id: Machine type identifier

        Returns:
            List of machines

        Raises:
            RepositoryError: If retrieval operation fails
        """
        pass

    # Reference data for planning

    @abstractmethod
    def get_detail(self, detail_id: UUID) -> Detail | None:
        """Retrieve a detail by its ID."""
        pass

    @abstractmethod
    def get_route_for_detail(self, detail_id: UUID) -> Route | None:
        """Retrieve the route of a detail, stages sorted by order."""
        pass

    @abstractmethod
    def get_batch(self, batch_id: UUID) -> Batch | None:
        """Retrieve a batch with its sub-batches."""
        pass

    @abstractmethod
    def add_batch(self, batch: Batch) -> Batch:
        """
        Persist a new batch with its sub-batches.

        Args:
            batch: Batch entity

        Returns:
            Saved batch

        Raises:
            RepositoryError: If the insert fails
        """
        pass
