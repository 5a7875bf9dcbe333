"""Database engine and session setup.

Production Pattern:
- One engine per process, sessions per unit of work
- Automatic table creation via init_database()
- Proper connection lifecycle management
"""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from stylebook.models import Base

# Global session factory (initialized on first use)
_session_factory: Optional[sessionmaker] = None


def create_db_engine(database_url: str) -> Engine:
    """
    Create engine for database_url.

    SQLite connections are shared across request threads and wait for
    writers instead of failing with "database is locked".
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(database_url: str) -> sessionmaker:
    """
    Create engine, ensure tables exist and return a session factory.

    Safe to call multiple times (idempotent table creation).
    """
    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_database(database_url: str) -> sessionmaker:
    """
    Initialize the process-wide session factory.

    Usage:
        @asynccontextmanager
        async def lifespan(app):
            init_database(settings.database_url)
            yield
            close_database()
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(database_url)

    return _session_factory


def get_session_factory() -> sessionmaker:
    """
    Get the process-wide session factory.

    Raises:
        RuntimeError: If init_database() has not run
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory


def close_database():
    """Dispose the engine and forget the session factory."""
    global _session_factory

    if _session_factory is not None:
        _session_factory.kw["bind"].dispose()
        _session_factory = None
