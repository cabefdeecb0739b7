"""
Database engine configuration.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from ..core.config import DatabaseConfig
from ..core.logging_config import get_logger

logger = get_logger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(config: DatabaseConfig) -> Engine:
    """
    Build a synchronous SQLAlchemy engine.

    Every wait on the database is bounded by `config.timeout_seconds`: the SQLite
    busy timeout, or the connection pool checkout timeout for server databases.

    Args:
        config: Database configuration

    Returns:
        SQLAlchemy engine instance
    """
    if config.is_sqlite:
        kwargs = {
            "echo": config.echo,
            "connect_args": {
                "check_same_thread": False,
                "timeout": config.timeout_seconds,
            },
        }
        if _is_memory_sqlite(config.url):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(config.url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            config.url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=config.timeout_seconds,
        )

    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine
