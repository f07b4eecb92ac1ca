# triage_engine/helpers/database.py
"""Database session helpers for the batch processor and Celery tasks.

The engine is created lazily from DATABASE_URL and cached per process.
"""

from contextlib import contextmanager
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

# Lazy, per process
_SessionLocal = None
_engine = None

DEFAULT_DATABASE_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "triage.db",
)


def configure_sqlite_engine(engine):
    """Register SQLite connection hooks on an engine.

    - foreign_keys: enforce FK constraints
    - journal_mode=WAL: parallel reads while a worker writes
    - busy_timeout: retry instead of failing on lock conflicts
    - BEGIN emitted by SQLAlchemy so SAVEPOINTs (one per link insert) work
      with the pysqlite driver
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # pysqlite soll selbst kein BEGIN senden
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        # NACH journal_mode setzen (WAL ändert den Default auf FULL)
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA busy_timeout = 5000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def _get_engine():
    """Get or create SQLAlchemy engine (cached).

    Supports both SQLite and PostgreSQL based on DATABASE_URL.
    SQLite: Uses check_same_thread and timeout connect_args
    PostgreSQL: Uses connection pooling for parallel account workers
    """
    global _engine
    if _engine is None:
        database_url = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DATABASE_PATH}")

        if database_url.startswith("sqlite"):
            _engine = configure_sqlite_engine(create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30.0}
            ))
        else:
            _engine = create_engine(
                database_url,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_pre_ping=True,
                connect_args={"connect_timeout": 10}
            )
    return _engine


def get_session_factory():
    """Get or create SQLAlchemy SessionLocal factory (cached)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=_get_engine())
    return _SessionLocal


def reset_engine():
    """Dispose the cached engine (after fork or DATABASE_URL change)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """Context manager for database sessions.

    Usage:
        with get_db_session() as db:
            rules = load_assignment_rules(db, user_id)

    Yields:
        SQLAlchemy session that auto-closes on exit
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
