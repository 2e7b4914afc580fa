"""Database engine and session factory."""

from collections.abc import Callable
from functools import partial

from sqlalchemy import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from ...core.config import settings


def create_db_engine(database_url: str | None = None, echo: bool | None = None) -> Engine:
    """
    Create the SQLAlchemy engine for ``DATABASE_URL``.

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    url = database_url or settings.DATABASE_URL
    engine_kwargs = {
        "echo": settings.LOG_SQL if echo is None else echo,
        "pool_pre_ping": settings.DATABASE_POOL_PRE_PING,
    }

    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            engine_kwargs["poolclass"] = StaticPool

    return create_engine(url, **engine_kwargs)


def build_session_factory(engine: Engine) -> Callable[[], Session]:
    return partial(Session, engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables."""
    # Registers the table models on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
