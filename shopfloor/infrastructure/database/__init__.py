"""Persistence adapters for the scheduling engine."""

from .engine import build_session_factory, create_db_engine, init_db
from .memory_gateway import InMemoryProductionGateway
from .sqlmodel_gateway import SqlModelProductionGateway
from .unit_of_work import DatabaseError, SqlModelUnitOfWork

__all__ = [
    "DatabaseError",
    "InMemoryProductionGateway",
    "SqlModelProductionGateway",
    "SqlModelUnitOfWork",
    "build_session_factory",
    "create_db_engine",
    "init_db",
]
