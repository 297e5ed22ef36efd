"""SQLAlchemy engine creation and configuration.

The engine backs the SQL tree store and is created once per process.
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from chatapp.config import get_settings


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create a SQLAlchemy engine with the given URL.

    Args:
        database_url: SQLAlchemy connection string. If None, uses settings.

    Returns:
        Configured SQLAlchemy engine.

    Note:
        In-memory SQLite URLs share a single connection across threads so
        every session sees the same database.
    """
    if database_url is None:
        settings = get_settings()
        database_url = settings.database_url

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=False,
    )


@lru_cache
def get_engine() -> Engine:
    """Get the cached database engine.

    Returns:
        The process-wide SQLAlchemy engine instance.
    """
    return create_db_engine()


def init_schema(engine: Engine) -> None:
    """Create the tree store tables if they do not exist."""
    from chatapp.db.models import Base

    Base.metadata.create_all(engine)
