"""Database module for the SQL tree store.

Provides engine creation, session handling and the leaf-row ORM model.
"""

from chatapp.db.engine import create_db_engine, get_engine, init_schema
from chatapp.db.models import Base, TreeNode
from chatapp.db.session import create_session_factory, write_session

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "init_schema",
    "create_session_factory",
    "write_session",
    # Models
    "Base",
    "TreeNode",
]
