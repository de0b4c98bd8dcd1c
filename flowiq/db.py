"""SQLAlchemy engine and session management.

The module owns a single engine built from :func:`flowiq.config.get_settings`.
Tests swap it for an in-memory database through :func:`configure_engine`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from flowiq.config import get_settings
from flowiq.models import Base

LOGGER = logging.getLogger(__name__)

_engine: Optional[Engine] = None
SessionLocal: sessionmaker = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def configure_sqlite(engine: Engine) -> None:
    """Enable foreign keys and let SQLAlchemy drive BEGIN so SAVEPOINTs work.

    pysqlite's own transaction handling breaks nested transactions, which the
    per-record EHR sync relies on.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")


def get_engine() -> Engine:
    """Return the process wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        settings = get_settings()
        engine = create_engine(settings.database_url, future=True, **settings.engine_options())
        if settings.is_sqlite:
            configure_sqlite(engine)
        configure_engine(engine)
    if _engine is None:
        raise RuntimeError("Database engine is not configured")
    return _engine


def configure_engine(engine: Engine) -> None:
    """Bind the session factory to ``engine``."""

    global _engine
    _engine = engine
    SessionLocal.configure(bind=engine)
    LOGGER.debug("database_engine_configured", extra={"url": str(engine.url)})


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not yet exist."""

    Base.metadata.create_all(engine or get_engine())


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request scoped session."""

    get_engine()
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
    """Provide a transactional scope for scripts and background jobs."""

    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["SessionLocal", "configure_engine", "configure_sqlite", "get_engine", "get_session", "init_db", "session_scope"]
