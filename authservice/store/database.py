"""SQLAlchemy engine and session factory helpers."""
from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine for the identity store.

    sqlite connections are shared with the audit worker threads, so
    ``check_same_thread`` is disabled and foreign keys are switched on
    (cascades rely on them).
    """
    connect_args = kwargs.pop("connect_args", {})
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)

    engine = create_engine(database_url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, _record):  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent)."""
    from authservice.store import models  # noqa: F401  register metadata

    Base.metadata.create_all(engine)
