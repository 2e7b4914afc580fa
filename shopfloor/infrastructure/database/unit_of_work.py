"""
Unit of Work implementation for managing database transactions.

Every gateway call runs inside one unit of work: a session that commits on
success and rolls back on error.
"""

from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ...domain.shared.exceptions import RepositoryError
from .engine import build_session_factory, create_db_engine


class DatabaseError(RepositoryError):
    """Raised when a database operation fails."""


class SqlModelUnitOfWork:
    """
    SQLModel-based unit of work.

    Manages one SQLModel/SQLAlchemy session per context block.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        """
        Initialize the unit of work.

        Args:
            session_factory: Optional session factory. If None, creates default engine.
        """
        self._session_factory = session_factory
        self._session: Session | None = None

    def __enter__(self):
        if self._session_factory is None:
            self._session_factory = build_session_factory(create_db_engine())
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self.rollback()
            else:
                try:
                    self.commit()
                except Exception:
                    self.rollback()
                    raise
        finally:
            if self._session:
                self._session.close()
                self._session = None

    def commit(self) -> None:
        """
        Commit the current transaction.

        Raises:
            DatabaseError: If commit fails
        """
        if not self._session:
            raise DatabaseError("No active session to commit")

        try:
            self._session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to commit transaction: {str(e)}") from e

    def rollback(self) -> None:
        """
        Rollback the current transaction.

        Raises:
            DatabaseError: If rollback fails
        """
        if not self._session:
            raise DatabaseError("No active session to rollback")

        try:
            self._session.rollback()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to rollback transaction: {str(e)}") from e

    def flush(self) -> None:
        """
        Flush pending changes to the database without committing.

        Raises:
            DatabaseError: If flush fails
        """
        if not self._session:
            raise DatabaseError("No active session to flush")

        try:
            self._session.flush()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to flush session: {str(e)}") from e

    @property
    def session(self) -> Session:
        """
        Get the current database session.

        Raises:
            DatabaseError: If no active session
        """
        if not self._session:
            raise DatabaseError("No active database session")
        return self._session
