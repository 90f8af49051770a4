"""Database Connection Module

Provides the SQLAlchemy declarative base, a lazily created engine with
connection pooling, and session helpers for FastAPI dependency injection and
batch scripts. The connection string comes from DATABASE_URL.
"""

from typing import Generator, Optional

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from relay_metrics.lib.config import get_settings

Base = declarative_base()


def create_metrics_engine(
    connection_string: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
) -> Engine:
    """Create SQLAlchemy engine for the metrics database.

    Args:
        connection_string: Database URL (defaults to DATABASE_URL)
        pool_size: Number of connections to maintain in pool
        max_overflow: Maximum overflow connections beyond pool_size
        pool_pre_ping: Test connections before use to detect stale connections

    Returns:
        Configured SQLAlchemy engine

    Raises:
        ValueError: If no connection string is configured
    """
    if connection_string is None:
        connection_string = get_settings().database_url
    if not connection_string:
        raise ValueError('Missing required configuration: DATABASE_URL')

    if connection_string.startswith('sqlite'):
        return create_engine(connection_string, connect_args={'check_same_thread': False})

    return create_engine(
        connection_string,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_recycle=3600,
        echo=False
    )


# Global engine instance (lazy-initialized)
_engine: Optional[Engine] = None


def is_database_configured() -> bool:
    """Check if DATABASE_URL is set."""
    return bool(get_settings().database_url)


def get_engine() -> Engine:
    """Get or create global engine instance.

    Raises:
        ValueError: If the database is not configured
    """
    global _engine
    if _engine is None:
        if not is_database_configured():
            raise ValueError('Metrics database is not configured. Please set DATABASE_URL.')
        _engine = create_metrics_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get session factory bound to the global engine.

    Usage:
        SessionFactory = get_session_factory()
        with SessionFactory() as session:
            rows = session.query(UploadMetric).filter_by(upload_id=upload_id).all()
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db_session() -> Generator[Session, None, None]:
    """Get database session for dependency injection.

    Yields:
        Database session; committed on success, rolled back on error

    Usage (FastAPI):
        @router.get("/uploads/hourly")
        async def hourly(db: Session = Depends(get_db_session)):
            ...
    """
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Return True when a trivial query succeeds against the configured database."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text('SELECT 1'))
        return True
    except Exception:
        return False


def get_optional_db_session() -> Generator[Optional[Session], None, None]:
    """Like get_db_session, but yields None when DATABASE_URL is not set.

    Used by read endpoints that degrade to cache-only data without a database.
    """
    if not is_database_configured():
        yield None
        return
    yield from get_db_session()
