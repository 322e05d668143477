"""Database engine setup for SQLite with WAL mode.

SQLAlchemy Core (not ORM): the store issues a handful of narrow
statements and owns its transactions explicitly. ``path=None`` selects a
shared in-memory database, which tests use.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from dslctl.infrastructure.database.schema import metadata


def create_db_engine(db_path: Path | None) -> Engine:
    """Create a SQLite engine with WAL mode and foreign keys enabled."""
    if db_path is None:
        # One connection shared across threads so every caller sees the same data.
        engine = create_engine(
            "sqlite://",
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn: Any, _: Any) -> None:
        cursor = dbapi_conn.cursor()
        if db_path is not None:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_database(db_path: Path | None) -> Engine:
    """Create the database (and parent directory) and all tables.

    Idempotent: safe to call on an existing database.
    """
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path)
    metadata.create_all(engine)
    return engine
