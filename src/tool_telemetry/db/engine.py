"""
Database engine and session lifecycle.

One process-wide engine, created lazily from ``TOOL_TELEMETRY_DATABASE_URL``
(or ``TOOL_TELEMETRY_DB_PATH`` for SQLite), and a thread-scoped session
registry on top of it. SQLite and PostgreSQL are supported; both provide the
``INSERT .. ON CONFLICT DO UPDATE .. RETURNING`` the tool-profile upsert needs.
"""

import logging
import os
from typing import Optional

from sqlalchemy import create_engine, event, text as sqltext
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import NullPool, QueuePool

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./tool_telemetry.db"

_engine: Optional[Engine] = None
_sessions: Optional[scoped_session] = None


def _database_url_from_env() -> str:
    url = os.getenv("TOOL_TELEMETRY_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{os.getenv('TOOL_TELEMETRY_DB_PATH', DEFAULT_DB_PATH)}"


def _display_url(url: str) -> str:
    # Strip credentials before logging
    return url.rsplit("@", 1)[-1] if "@" in url else url


def enable_sqlite_pragmas(engine: Engine):
    """Apply WAL, foreign-key enforcement and a busy timeout on each new SQLite connection.

    Foreign keys must be on for the ``ON DELETE CASCADE`` purge of a profile's rows.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
            cursor.execute(f"PRAGMA {pragma}")
        cursor.close()


def get_engine(url: Optional[str] = None) -> Engine:
    """Return the process-wide engine, creating it on first use.

    *url* is only read when no engine exists yet; ``close_db()`` resets it.
    """
    global _engine
    if _engine is not None:
        return _engine

    url = url or _database_url_from_env()
    if url.startswith("sqlite"):
        # File-backed SQLite serializes writers itself; pooling adds nothing
        _engine = create_engine(url, poolclass=NullPool)
        enable_sqlite_pragmas(_engine)
    else:
        _engine = create_engine(url, poolclass=QueuePool, pool_size=5, pool_pre_ping=True)
    logger.info("[db] Engine ready (%s): %s", _engine.dialect.name, _display_url(url))
    return _engine


def get_session() -> Session:
    """Session for the current thread; released by ``remove_session()``."""
    global _sessions
    if _sessions is None:
        _sessions = scoped_session(sessionmaker(bind=get_engine()))
    return _sessions()


def remove_session():
    if _sessions is not None:
        _sessions.remove()


def ping() -> bool:
    """True when ``SELECT 1`` succeeds against the engine."""
    try:
        with get_engine().connect() as conn:
            conn.execute(sqltext("SELECT 1"))
    except Exception as exc:
        logger.warning("[db] Ping failed: %s", exc)
        return False
    return True


def init_db(url: Optional[str] = None):
    """Create any missing tables."""
    engine = get_engine(url)
    try:
        Base.metadata.create_all(engine)
    except Exception as exc:
        logger.error("[db] Creating tables on %s failed: %s", engine.dialect.name, exc, exc_info=True)
        raise
    logger.info("[db] Tables verified on %s", engine.dialect.name)


def close_db():
    """Drop the session registry and dispose the engine."""
    global _engine, _sessions
    if _sessions is not None:
        _sessions.remove()
        _sessions = None
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("[db] Engine disposed")
