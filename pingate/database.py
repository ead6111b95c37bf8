"""
Database connection and session management for PinGate.

PostgreSQL (or SQLite for tests and local development) through SQLAlchemy, plus
an optional Redis client used for rate-limit storage and per-location locks.
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Mapping, Optional

import redis
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from pingate.errors import PinGateError
from pingate.models import Base

logger = logging.getLogger(__name__)

# Global database engine and session factory
_engine = None
_SessionFactory = None
_redis_client = None


def _describe_url(db_url: str) -> str:
    return db_url.split("@")[1] if "@" in db_url else db_url.split("://")[0]


def init_database(db_url: str, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: SQLAlchemy database URL
        echo: If True, log all SQL statements
        create_tables: If True, create all tables (use migrations in production)
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Database already initialized")
        return

    engine_kwargs = {"echo": echo, "pool_pre_ping": True}

    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            # One shared connection, otherwise every checkout sees an empty database.
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
                "connect_args": {"connect_timeout": 10, "options": "-c timezone=utc"},
            }
        )

    _engine = create_engine(db_url, **engine_kwargs)

    if db_url.startswith("sqlite"):

        @event.listens_for(_engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    _SessionFactory = scoped_session(session_factory)

    if create_tables:
        Base.metadata.create_all(_engine)

    logger.info(f"Database initialized: {_describe_url(db_url)}")


def get_session() -> Session:
    """
    Get a database session.

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope for database operations.

    Usage:
        with session_scope() as session:
            location = session.get(Location, location_id)
            # Automatically commits on success, rolls back on error
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except PinGateError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        session.close()


def close_database() -> None:
    global _engine, _SessionFactory

    if _SessionFactory:
        _SessionFactory.remove()
        _SessionFactory = None

    if _engine:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def check_database_health() -> dict:
    """
    Check database connection health.

    Returns:
        Dictionary with health status
    """
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))

        return {"status": "healthy", "connected": True}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}


# ============================================================================
# Redis Connection Management
# ============================================================================


def init_redis(config: Mapping[str, Any]) -> None:
    """
    Initialize Redis when configured. Without Redis the service still runs;
    rate limits fall back to memory and sponsorship locks to process-local ones.
    """
    global _redis_client

    if _redis_client is not None:
        logger.warning("Redis already initialized")
        return

    redis_url = config.get("REDIS_URL")
    redis_host = config.get("REDIS_HOST")
    if not redis_url and not redis_host:
        logger.info("Redis not configured; using in-process fallbacks")
        return

    try:
        if redis_url:
            client = redis.Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=5)
        else:
            client = redis.Redis(
                host=redis_host,
                port=config.get("REDIS_PORT", 6379),
                password=config.get("REDIS_PASSWORD"),
                db=config.get("REDIS_DB", 0),
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )
        client.ping()
        _redis_client = client
        logger.info("Redis initialized")
    except redis.RedisError as e:
        logger.error(f"Failed to initialize Redis: {e}")
        logger.warning("Falling back to in-process locks and memory rate limits")
        _redis_client = None


def get_redis() -> Optional[redis.Redis]:
    return _redis_client


def close_redis() -> None:
    global _redis_client

    if _redis_client:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


def check_redis_health() -> dict:
    if _redis_client is None:
        return {"status": "unavailable", "connected": False}

    try:
        _redis_client.ping()
        info = _redis_client.info()
        return {
            "status": "healthy",
            "connected": True,
            "version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}


# ============================================================================
# Initialization Helper
# ============================================================================


def init_all(config: Mapping[str, Any], echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize both database and Redis.

    SQLite databases get their tables created automatically.
    """
    db_url = config["DATABASE_URL"]
    if db_url.startswith("sqlite"):
        create_tables = True

    init_database(db_url, echo=echo, create_tables=create_tables)
    init_redis(config)

    logger.info("All database connections initialized")


def close_all() -> None:
    close_database()
    close_redis()


def get_health_status() -> dict:
    return {"database": check_database_health(), "redis": check_redis_health()}
