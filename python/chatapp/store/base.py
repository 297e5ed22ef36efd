"""Realtime tree store abstraction.

The chat core keeps all of its shared state in a key-path addressed JSON tree
reached through a client SDK. This module defines that contract:

- Single-value reads of any subtree (get)
- Subtree replacement and field-level partial updates (set / update / remove)
- Atomic read-modify-write of a single node (transact)
- Live subscriptions that push the full current value at a path whenever
  anything at, above or below that path changes (subscribe)
- "On disconnect, apply this write" registrations (on_disconnect)
- Generated unique, time-ordered child keys (push_key)

Paths are slash separated with no leading slash ("user-chats/u1/c1").
Empty objects collapse to None, as in the hosted backend.

Subscription callbacks run synchronously on the writing thread, after the
write has been applied and outside the store lock. Updates for a single
subscription arrive in the order writes are applied; there is no ordering
guarantee across subscriptions.
"""

import random
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from chatapp.logging import get_logger

logger = get_logger(__name__)

# Special path reflecting the live connection state (bool)
CONNECTED_PATH = ".info/connected"

# Placeholder resolved to the backend clock when the write is applied
SERVER_TIMESTAMP: dict[str, str] = {".sv": "timestamp"}

# Alphabet for push keys, ordered so keys sort lexicographically by creation time
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

FORBIDDEN_KEY_CHARS = set(".#$[]")


class StoreError(Exception):
    """Tree store operation error."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path


def split_path(path: str) -> list[str]:
    """Split a key path into segments.

    Raises:
        StoreError: If a segment is empty or contains a forbidden character.
    """
    stripped = path.strip("/")
    if not stripped:
        return []
    segments = stripped.split("/")
    for segment in segments:
        if not segment or FORBIDDEN_KEY_CHARS.intersection(segment):
            raise StoreError(f"Invalid path segment {segment!r} in {path!r}", path=path)
    return segments


def join_path(*parts: str) -> str:
    """Join path parts, ignoring empty parts and redundant slashes."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def paths_related(a: str, b: str) -> bool:
    """True if a and b are equal or one is an ancestor of the other."""
    if a == b or not a or not b:
        return True
    return a.startswith(b + "/") or b.startswith(a + "/")


def _is_server_timestamp(value: Any) -> bool:
    return isinstance(value, dict) and value == SERVER_TIMESTAMP


class Subscription:
    """Handle for a live subscription; cancel() stops further deliveries."""

    def __init__(self, store: "TreeStoreBase", path: str, callback: Callable[[Any], None]):
        self.store = store
        self.path = path
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self.store._remove_subscription(self)


class TreeStoreBase(ABC):
    """Abstract base class for tree store implementations.

    Subclasses implement storage of plain JSON values through _read and
    _write; subscriptions, disconnect hooks, server timestamps and push keys
    are handled here.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        self._lock = threading.RLock()
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._subscriptions: list[Subscription] = []
        self._disconnect_writes: list[tuple[str, Any]] = []
        self._connected = False
        self._last_push_ms = -1
        self._last_push_suffix: list[int] = []

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    def _read(self, segments: list[str]) -> Any:
        """Return the JSON value at segments, or None if absent."""
        ...

    @abstractmethod
    def _write(self, segments: list[str], value: Any) -> None:
        """Replace the subtree at segments with value (None deletes)."""
        ...

    def _check_read(self, path: str) -> None:
        """Hook for implementations that can refuse a read."""

    def _check_write(self, path: str) -> None:
        """Hook for implementations that can refuse a write."""

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def server_timestamp(self) -> int:
        """Backend clock in epoch milliseconds."""
        return self._clock()

    @property
    def connected(self) -> bool:
        return self._connected

    def get(self, path: str) -> Any:
        """Read the current value at path.

        Raises:
            StoreError: If the read fails.
        """
        if path.strip("/") == CONNECTED_PATH:
            return self._connected
        segments = split_path(path)
        self._check_read(path)
        with self._lock:
            return self._read(segments)

    def set(self, path: str, value: Any) -> None:
        """Replace the value at path. Setting None deletes it.

        Raises:
            StoreError: If the write fails.
        """
        segments = split_path(path)
        self._check_write(path)
        resolved = self._resolve_server_values(value)
        with self._lock:
            self._write(segments, resolved)
        self._notify([path])

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Apply a partial update: each key (may itself be a relative path) is set.

        Raises:
            StoreError: If the write fails.
        """
        targets = [(join_path(path, key), value) for key, value in fields.items()]
        for target, _ in targets:
            split_path(target)
            self._check_write(target)
        with self._lock:
            for target, value in targets:
                self._write(split_path(target), self._resolve_server_values(value))
        self._notify([target for target, _ in targets])

    def remove(self, path: str) -> None:
        """Delete the subtree at path."""
        self.set(path, None)

    def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace the value at path with fn(current).

        Returns:
            The value written.

        Raises:
            StoreError: If the read or write fails.
        """
        segments = split_path(path)
        self._check_read(path)
        self._check_write(path)
        with self._lock:
            new_value = self._resolve_server_values(fn(self._read(segments)))
            self._write(segments, new_value)
        self._notify([path])
        return new_value

    def push_key(self) -> str:
        """Generate a unique child key that sorts by creation time."""
        with self._lock:
            now = self.server_timestamp()
            if now == self._last_push_ms and self._last_push_suffix:
                # Same millisecond: increment the random suffix to keep ordering
                suffix = list(self._last_push_suffix)
                i = len(suffix) - 1
                while i >= 0 and suffix[i] == 63:
                    suffix[i] = 0
                    i -= 1
                if i >= 0:
                    suffix[i] += 1
            else:
                suffix = [random.randrange(64) for _ in range(12)]
            self._last_push_ms = now
            self._last_push_suffix = suffix

        time_chars = []
        remaining = now
        for _ in range(8):
            time_chars.append(PUSH_CHARS[remaining % 64])
            remaining //= 64
        return "".join(reversed(time_chars)) + "".join(PUSH_CHARS[i] for i in suffix)

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> Subscription:
        """Subscribe to the value at path.

        The callback receives the current value immediately and again after
        every change at, above or below path.
        """
        if path.strip("/") != CONNECTED_PATH:
            split_path(path)
        subscription = Subscription(self, path.strip("/"), callback)
        with self._lock:
            self._subscriptions.append(subscription)
        self._deliver(subscription)
        return subscription

    def on_disconnect(self, path: str, value: Any) -> None:
        """Register a write the backend applies when the connection drops.

        SERVER_TIMESTAMP placeholders are resolved when the write is applied.
        """
        split_path(path)
        with self._lock:
            self._disconnect_writes.append((path, value))

    def cancel_on_disconnect(self, path: str | None = None) -> None:
        """Drop registered disconnect writes (all, or those at or below path)."""
        with self._lock:
            if path is None:
                self._disconnect_writes.clear()
            else:
                self._disconnect_writes = [
                    (p, v)
                    for p, v in self._disconnect_writes
                    if not (p == path or p.startswith(path.rstrip("/") + "/"))
                ]

    def connect(self) -> None:
        """Mark the live connection as established."""
        with self._lock:
            if self._connected:
                return
            self._connected = True
        logger.debug("tree_store_connected")
        self._notify([CONNECTED_PATH])

    def disconnect(self) -> None:
        """Drop the live connection and apply registered disconnect writes."""
        with self._lock:
            if not self._connected:
                return
            self._connected = False
            pending = list(self._disconnect_writes)
            self._disconnect_writes.clear()

        changed = [CONNECTED_PATH]
        for path, value in pending:
            try:
                with self._lock:
                    self._write(split_path(path), self._resolve_server_values(value))
                changed.append(path)
            except StoreError as e:
                logger.warning("disconnect_write_failed", path=path, error=e.message)
        logger.debug("tree_store_disconnected", applied_writes=len(changed) - 1)
        self._notify(changed)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _resolve_server_values(self, value: Any) -> Any:
        if _is_server_timestamp(value):
            return self.server_timestamp()
        if isinstance(value, dict):
            resolved = {}
            for key, child in value.items():
                child = self._resolve_server_values(child)
                # Empty subtrees do not exist in the tree
                if child is not None:
                    resolved[key] = child
            return resolved or None
        return value

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, changed_paths: list[str]) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if any(paths_related(subscription.path, p.strip("/")) for p in changed_paths):
                self._deliver(subscription)

    def _deliver(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        try:
            value = self.get(subscription.path)
        except StoreError as e:
            logger.warning("subscription_read_failed", path=subscription.path, error=e.message)
            return
        try:
            subscription.callback(value)
        except Exception:
            logger.exception("subscription_callback_failed", path=subscription.path)
