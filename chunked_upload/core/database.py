"""
Database connection and session management
"""
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


def build_engine(database_url: str) -> Engine:
    """
    Create a sync engine for the given URL.
    
    SQLite is used for local runs and tests; connections are shared across
    request threads and writers wait on the database lock instead of failing.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url:
                # Readers don't block the writer committing a chunk
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True, pool_size=10, max_overflow=20)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent)"""
    # Models must be imported so their tables are registered on Base.metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(session_factory: sessionmaker = SessionLocal):
    """Context manager for database sessions (one transaction per block)."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
