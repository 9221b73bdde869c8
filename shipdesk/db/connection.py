"""Database connection management for ShipDesk.

SQLite by default, any SQLAlchemy URL via configuration. The engine is
built lazily so that the CLI can apply its configuration first.

Usage:
    from shipdesk.db.connection import get_db_context, init_db

    init_db()
    with get_db_context() as db:
        service = ShipmentService(db)
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from shipdesk.db.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".shipdesk" / "shipdesk.db"

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_database_url(configured: str | None = None) -> str:
    """Resolve the database URL.

    Precedence:
    1. DATABASE_URL (canonical)
    2. SHIPDESK_DB_PATH (path, converted to a sqlite URL)
    3. ``configured`` (from shipdesk.yaml)
    4. sqlite:///~/.shipdesk/shipdesk.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("SHIPDESK_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    if configured:
        return configured

    DEFAULT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DEFAULT_DB_PATH}"


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Turn on foreign keys and WAL for SQLite connections."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


def build_engine(url: str) -> Engine:
    """Create an engine for ``url`` with ShipDesk's SQLite settings."""
    is_sqlite = url.startswith("sqlite")
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
    )
    if is_sqlite:
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


def configure(url: str | None = None) -> Engine:
    """Build (or rebuild) the process-wide engine and session factory.

    Args:
        url: Database URL from configuration; environment variables win.

    Returns:
        The configured engine.
    """
    global _engine, _session_factory
    resolved = get_database_url(url)
    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(resolved)
    _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.debug("Database configured: %s", resolved.split("@")[-1])
    return _engine


def get_engine() -> Engine:
    """Return the process-wide engine, configuring it on first use."""
    if _engine is None:
        return configure()
    return _engine


def init_db(engine: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine or get_engine())


def new_session() -> Session:
    """Open a session on the process-wide engine."""
    if _session_factory is None:
        configure()
    assert _session_factory is not None
    return _session_factory()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Commits on success, rolls back on error.

    Usage:
        with get_db_context() as db:
            shipment = db.get(Shipment, shipment_id)
    """
    db = new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
