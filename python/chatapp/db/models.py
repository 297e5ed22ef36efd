"""SQLAlchemy ORM models for the SQL tree store.

The tree is persisted as flattened leaves: one row per leaf value, keyed by
its full slash-separated path. Subtrees are reassembled on read.
"""

from typing import Any

from sqlalchemy import JSON, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TreeNode(Base):
    """A single leaf of the realtime tree."""

    __tablename__ = "tree_nodes"

    path: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
