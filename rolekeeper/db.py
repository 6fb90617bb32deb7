"""Database engine and session utilities for the grant store."""
from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

DEFAULT_SQLITE_URL = "sqlite+pysqlite:///data/rolekeeper.db"


def _register_sqlite_pragmas(engine: Engine) -> None:
    """Enforce foreign keys; SQLite leaves them off by default."""

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record) -> None:  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine_from_env(echo: bool = False, url: Optional[str] = None) -> Engine:
    """Create the SQLAlchemy engine using ``ROLEKEEPER_DB_URL`` or an explicit URL."""

    database_url = url or os.environ.get("ROLEKEEPER_DB_URL") or DEFAULT_SQLITE_URL
    connect_args = {}
    if database_url.startswith("sqlite"):  # pragma: no branch - deterministic
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
        database = make_url(database_url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        _register_sqlite_pragmas(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a configured session factory for the provided engine."""

    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    """Create any missing tables; alembic owns migrations in Postgres."""

    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope for DB operations."""

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
