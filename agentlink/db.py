"""SQLite engine and transactional sessions for the conversation store."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy import Engine, event
from sqlmodel import Session, SQLModel, create_engine

from agentlink.settings import settings

logger = structlog.get_logger(__name__)

DB_FILENAME = "conversations.db"

_engine: Engine | None = None


def database_url() -> str:
    return f"sqlite:///{os.path.join(settings.data_dir(), DB_FILENAME)}"


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    # Readers of a conversation must not block the writer of a live reply.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def engine() -> Engine:
    """Return the store engine, opening the database on first use."""
    global _engine
    if _engine is None:
        os.makedirs(settings.data_dir(), exist_ok=True)
        _engine = create_engine(database_url(), connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _configure_sqlite)
        logger.debug("Database opened", url=database_url())
    return _engine


def dispose_engine() -> None:
    """Close the engine; the next use re-reads AGENTLINK_DATA_DIR."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that commits when the block succeeds and rolls back otherwise."""
    with Session(engine()) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def init_db() -> None:
    """Create the message and agent tables if they are missing."""
    import agentlink.models  # noqa: F401

    SQLModel.metadata.create_all(bind=engine())
