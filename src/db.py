"""SQLite engine and schema init for the embedded credential store.

Uses SQLAlchemy and SQLModel; the database path comes from the vault
(config.data_dir() / "credentials.db" by default).
"""

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from models import Credential  # noqa: F401  registers the table

logger = logging.getLogger(__name__)


def _database_url(path: Path) -> str:
    return f"sqlite:///{path}"


def create_store_engine(path: str | Path) -> Engine:
    """Return an engine for the credential DB at *path*, creating parent dirs.

    The pool is pinned to a single connection: the embedded store is local and
    writes must never run concurrently.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        _database_url(path),
        echo=False,
        pool_size=1,
        max_overflow=0,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables from SQLModel metadata if they do not exist."""
    SQLModel.metadata.create_all(engine)
    logger.debug("Credential store schema ready at %s", engine.url)
