"""SQL-backed tree store.

Persists the tree as flattened leaf rows (see chatapp.db.models.TreeNode)
through SQLAlchemy. Each _write runs in its own transaction: the subtree rows
are deleted, any ancestor leaf that would be shadowed is deleted, and the new
leaves are inserted.
"""

from collections.abc import Callable
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatapp.db.models import TreeNode
from chatapp.db.session import write_session
from chatapp.logging import get_logger
from chatapp.store.base import StoreError, TreeStoreBase, join_path

logger = get_logger(__name__)


def flatten(path: str, value: Any) -> list[tuple[str, Any]]:
    """Flatten a JSON value into (leaf_path, leaf_value) pairs.

    Lists are stored as leaves. Empty dicts produce no rows.
    """
    if isinstance(value, dict):
        rows: list[tuple[str, Any]] = []
        for key, child in value.items():
            if child is None:
                continue
            rows.extend(flatten(join_path(path, str(key)), child))
        return rows
    return [(path, value)]


def unflatten(prefix: str, rows: list[tuple[str, Any]]) -> Any:
    """Rebuild the value at prefix from leaf rows at or below it."""
    tree: dict[str, Any] = {}
    for path, value in rows:
        if path == prefix:
            return value
        relative = path[len(prefix) + 1 :] if prefix else path
        node = tree
        parts = relative.split("/")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return tree or None


class SqlTreeStore(TreeStoreBase):
    """Tree store persisted in a relational database."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], int] | None = None,
    ):
        super().__init__(clock=clock)
        self._session_factory = session_factory

    def _read(self, segments: list[str]) -> Any:
        prefix = join_path(*segments)
        stmt = select(TreeNode.path, TreeNode.value)
        if prefix:
            stmt = stmt.where(
                or_(
                    TreeNode.path == prefix,
                    TreeNode.path.startswith(prefix + "/", autoescape=True),
                )
            )
        try:
            with self._session_factory() as db:
                rows = [(row.path, row.value) for row in db.execute(stmt)]
        except SQLAlchemyError as e:
            logger.warning("tree_read_failed", path=prefix, error=str(e))
            raise StoreError(f"Failed to read {prefix}: {e}", path=prefix) from e
        return unflatten(prefix, rows)

    def _write(self, segments: list[str], value: Any) -> None:
        prefix = join_path(*segments)
        ancestors = [join_path(*segments[:i]) for i in range(1, len(segments))]

        try:
            with write_session(self._session_factory) as db:
                if prefix:
                    db.execute(
                        delete(TreeNode).where(
                            or_(
                                TreeNode.path == prefix,
                                TreeNode.path.startswith(prefix + "/", autoescape=True),
                            )
                        )
                    )
                else:
                    db.execute(delete(TreeNode))
                if ancestors:
                    db.execute(delete(TreeNode).where(TreeNode.path.in_(ancestors)))
                if value is not None:
                    for path, leaf in flatten(prefix, value):
                        db.add(TreeNode(path=path, value=leaf))
        except SQLAlchemyError as e:
            logger.warning("tree_write_failed", path=prefix, error=str(e))
            raise StoreError(f"Failed to write {prefix}: {e}", path=prefix) from e
