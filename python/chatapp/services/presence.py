"""Presence tracking keyed to the live connection.

When the backend reports the connection as established, the tracker writes
status Online and arms on-disconnect writes (status Offline, lastSeen at the
server clock) that the backend applies without any further client code
running. Every reconnect re-arms them, replacing the previous registration.

Initialization state lives on the tracker, so two trackers for different
sessions do not interfere.
"""

from enum import Enum
from typing import Any

from chatapp.logging import get_logger
from chatapp.schemas.identity import UserStatus
from chatapp.store import paths
from chatapp.store.base import (
    CONNECTED_PATH,
    SERVER_TIMESTAMP,
    StoreError,
    Subscription,
    TreeStoreBase,
)

logger = get_logger(__name__)


class PresenceState(str, Enum):
    OFFLINE = "OFFLINE"
    ONLINE = "ONLINE"


class PresenceTracker:
    """Maintains the online / offline / last-seen fields of one user."""

    def __init__(self, store: TreeStoreBase, user_id: str):
        self._store = store
        self._user_id = user_id
        self._subscription: Subscription | None = None
        self.state = PresenceState.OFFLINE

    @property
    def started(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        """Begin tracking. Calling it again while started does nothing."""
        if self._subscription is not None:
            return
        self._subscription = self._store.subscribe(CONNECTED_PATH, self._on_connection_change)
        logger.debug("presence_started", user_id=self._user_id)

    def stop(self) -> None:
        """Stop tracking and record the user as offline now (graceful sign-out)."""
        if self._subscription is None:
            return
        self._subscription.cancel()
        self._subscription = None

        status_path = paths.user_field_path(self._user_id, "status")
        last_seen_path = paths.user_field_path(self._user_id, "lastSeen")
        self._store.cancel_on_disconnect(status_path)
        self._store.cancel_on_disconnect(last_seen_path)
        try:
            self._store.update(
                paths.user_path(self._user_id),
                {"status": UserStatus.OFFLINE.value, "lastSeen": SERVER_TIMESTAMP},
            )
        except StoreError as e:
            logger.warning("presence_offline_write_failed", user_id=self._user_id, error=e.message)
        self.state = PresenceState.OFFLINE
        logger.debug("presence_stopped", user_id=self._user_id)

    def _on_connection_change(self, connected: Any) -> None:
        if not connected:
            # The backend has already applied the disconnect writes
            self.state = PresenceState.OFFLINE
            return

        status_path = paths.user_field_path(self._user_id, "status")
        last_seen_path = paths.user_field_path(self._user_id, "lastSeen")
        self._store.cancel_on_disconnect(status_path)
        self._store.cancel_on_disconnect(last_seen_path)
        self._store.on_disconnect(status_path, UserStatus.OFFLINE.value)
        self._store.on_disconnect(last_seen_path, SERVER_TIMESTAMP)

        try:
            self._store.set(status_path, UserStatus.ONLINE.value)
        except StoreError as e:
            logger.warning("presence_online_write_failed", user_id=self._user_id, error=e.message)
            return
        self.state = PresenceState.ONLINE
        logger.info("presence_online", user_id=self._user_id)
