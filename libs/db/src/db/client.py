"""Process-wide SQLAlchemy engine and session helpers.

Usage
-----
from db.client import session_scope

with session_scope() as s:
    s.execute(...)

The URL comes from ``DATABASE_URL`` unless passed explicitly. SQLite URLs get
``PRAGMA foreign_keys=ON`` on every connection; production runs on Postgres
and is migrated with Alembic, while :func:`create_schema` exists for local
SQLite files and tests.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_SESSION_MAKER: sessionmaker[Session] | None = None
_DB_URL: str | None = None
_LOCK = threading.Lock()


def _database_url(override: str | None = None) -> str:
    url = override or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot initialize database client")
    return url


def _new_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Sync runs on a worker thread; SQLite connections must be shareable.
        engine = create_engine(url, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _record) -> None:  # pragma: no cover - tiny bridge
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys = ON")
            cur.close()

        return engine
    return create_engine(url, pool_pre_ping=True)


def get_engine(*, database_url: str | None = None) -> Engine:
    """Return the shared engine, creating it on first use."""

    global _ENGINE, _SESSION_MAKER, _DB_URL
    url = _database_url(database_url)
    with _LOCK:
        if _ENGINE is None:
            _ENGINE = _new_engine(url)
            _SESSION_MAKER = sessionmaker(bind=_ENGINE, expire_on_commit=False, class_=Session)
            _DB_URL = url
            return _ENGINE
    if _DB_URL is not None and url != _DB_URL:
        raise RuntimeError(
            "get_engine() already initialized with a different DATABASE_URL; "
            "call dispose_engine() first or avoid passing a different URL"
        )
    return _ENGINE


def dispose_engine() -> None:
    """Drop the shared engine so the next call can bind to a new URL."""

    global _ENGINE, _SESSION_MAKER, _DB_URL
    with _LOCK:
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = None
        _SESSION_MAKER = None
        _DB_URL = None


def get_session(*, database_url: str | None = None) -> Session:
    """Return a new session bound to the shared engine."""

    get_engine(database_url=database_url)
    maker = _SESSION_MAKER
    if maker is None:
        raise RuntimeError("engine was disposed while opening a session")
    return maker()


@contextmanager
def session_scope(*, database_url: str | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = get_session(database_url=database_url)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(*, database_url: str | None = None) -> None:
    """Create all tables from ORM metadata (SQLite/dev only; Postgres uses Alembic)."""

    from .models.expenses import Base

    Base.metadata.create_all(bind=get_engine(database_url=database_url))


__all__ = [
    "create_schema",
    "dispose_engine",
    "get_engine",
    "get_session",
    "session_scope",
]
