"""Database helpers for TherapyFlow.

This module centralises creation of the SQLAlchemy engine that backs the
application.  It supports both the default SQLite deployment used in local
development and PostgreSQL connections controlled via environment
variables (see :mod:`therapyflow.db.config`).
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def configure_sqlite_engine(engine: Engine) -> Engine:
    """Enable foreign keys and SQLAlchemy-managed transactions on a SQLite engine.

    pysqlite opens transactions lazily and outside SQLAlchemy's control,
    which breaks ``SAVEPOINT``.  Disabling its own handling and emitting
    ``BEGIN`` ourselves makes ``Session.begin_nested`` behave as on
    PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[override]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # type: ignore[override]
        connection.exec_driver_sql("BEGIN")

    return engine


def _create_engine(settings: DatabaseSettings) -> Engine:
    engine = create_engine(settings.url, **settings.engine_options())
    if settings.is_sqlite:
        configure_sqlite_engine(engine)
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        _engine = _create_engine(get_database_settings())
    return _engine


def configure_engine(engine: Engine) -> None:
    """Point the module at *engine* (used by tests and scripts)."""

    global _engine, _session_factory
    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def _factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), autoflush=False, expire_on_commit=False, future=True
        )
    return _session_factory


def SessionLocal() -> Session:  # noqa: N802 - mirrors the sessionmaker call style
    return _factory()()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that commits on success."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not yet exist."""

    target = engine or get_engine()
    Base.metadata.create_all(bind=target)
    logger.info("database_schema_initialised", tables=len(Base.metadata.tables))


__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "get_engine",
    "configure_engine",
    "configure_sqlite_engine",
    "SessionLocal",
    "get_session",
    "session_scope",
    "init_db",
]
