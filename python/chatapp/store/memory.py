"""In-memory tree store.

Used for local development and unit tests, in the same role the fake blob
storage client plays. Provides failure injection and a write log so tests can
assert on backend errors and on "no writes occurred".
"""

import copy
from collections.abc import Callable
from typing import Any

from chatapp.store.base import StoreError, TreeStoreBase, join_path, paths_related


class FakeTreeStore(TreeStoreBase):
    """Tree store kept in a nested dict."""

    def __init__(self, clock: Callable[[], int] | None = None):
        super().__init__(clock=clock)
        self._root: dict[str, Any] = {}
        self._failing_reads: set[str] = set()
        self._failing_writes: set[str] = set()
        self.writes: list[tuple[str, Any]] = []

    def _read(self, segments: list[str]) -> Any:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        if isinstance(node, dict) and not node:
            return None
        return copy.deepcopy(node)

    def _write(self, segments: list[str], value: Any) -> None:
        self.writes.append((join_path(*segments), copy.deepcopy(value)))

        if not segments:
            self._root = copy.deepcopy(value) if isinstance(value, dict) else {}
            return

        if value is None:
            self._delete(segments)
            return

        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                # Writing below a leaf replaces the leaf
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = copy.deepcopy(value)

    def _delete(self, segments: list[str]) -> None:
        trail = []
        node: Any = self._root
        for segment in segments[:-1]:
            if not isinstance(node, dict) or segment not in node:
                return
            trail.append((node, segment))
            node = node[segment]
        if isinstance(node, dict):
            node.pop(segments[-1], None)
        # Prune parents left empty
        for parent, key in reversed(trail):
            if isinstance(parent[key], dict) and not parent[key]:
                del parent[key]
            else:
                break

    def _check_read(self, path: str) -> None:
        for prefix in self._failing_reads:
            if paths_related(path.strip("/"), prefix):
                raise StoreError(f"Permission denied reading {path}", path=path)

    def _check_write(self, path: str) -> None:
        for prefix in self._failing_writes:
            if paths_related(path.strip("/"), prefix):
                raise StoreError(f"Permission denied writing {path}", path=path)

    # Test helper methods

    def fail_reads_under(self, path: str) -> None:
        """Make reads at, above or below path raise StoreError (test helper)."""
        self._failing_reads.add(path.strip("/"))

    def fail_writes_under(self, path: str) -> None:
        """Make writes at, above or below path raise StoreError (test helper)."""
        self._failing_writes.add(path.strip("/"))

    def clear_failures(self) -> None:
        """Remove all injected failures (test helper)."""
        self._failing_reads.clear()
        self._failing_writes.clear()

    def dump(self) -> dict[str, Any]:
        """Return a deep copy of the whole tree (test helper)."""
        return copy.deepcopy(self._root)
