"""Realtime tree store: the backend all shared chat state lives in.

Provides:
- TreeStoreBase contract (reads, writes, subscriptions, disconnect hooks)
- FakeTreeStore for local development and tests
- SqlTreeStore persisted through SQLAlchemy
- Path builders for every node the core touches
"""

from chatapp.config import Settings, TreeStoreBackend, get_settings
from chatapp.store.base import (
    CONNECTED_PATH,
    SERVER_TIMESTAMP,
    StoreError,
    Subscription,
    TreeStoreBase,
    join_path,
    split_path,
)
from chatapp.store.memory import FakeTreeStore
from chatapp.store.sql import SqlTreeStore


def get_tree_store(settings: Settings | None = None) -> TreeStoreBase:
    """Get the configured tree store.

    Returns:
        SqlTreeStore when TREE_STORE_BACKEND=sql (schema created on demand),
        FakeTreeStore otherwise.
    """
    settings = settings or get_settings()

    if settings.tree_store_backend == TreeStoreBackend.SQL:
        from chatapp.db import create_db_engine, create_session_factory, init_schema

        engine = create_db_engine(settings.database_url)
        init_schema(engine)
        return SqlTreeStore(create_session_factory(engine))

    return FakeTreeStore()


__all__ = [
    "CONNECTED_PATH",
    "SERVER_TIMESTAMP",
    "StoreError",
    "Subscription",
    "TreeStoreBase",
    "FakeTreeStore",
    "SqlTreeStore",
    "get_tree_store",
    "join_path",
    "split_path",
]
