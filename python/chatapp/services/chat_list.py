"""Local conversation list reconciler.

Keeps the UI-facing, ordered list of conversation summaries consistent with
a live subscription while optimistic deletes are in flight.

Modes:
- Normal: every snapshot replaces the list (entries without an id dropped),
  sorted by lastMessageTime descending.
- Delete-in-flight: snapshots only append ids that are neither in the local
  list nor the one being deleted, then re-sort. Existing entries are left
  alone so a stale snapshot cannot resurrect the removed entry.

The in-flight flag belongs to the reconciler instance.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from chatapp.errors import InvalidRequestError, OperationInFlightError, StaleLocalStateError
from chatapp.logging import get_logger
from chatapp.schemas.conversation import ConversationSummary
from chatapp.services.conversations import filter_summaries, summaries_from_snapshot

logger = get_logger(__name__)


def _sort_newest_first(summaries: list[ConversationSummary]) -> list[ConversationSummary]:
    return sorted(summaries, key=lambda s: s.last_message_at, reverse=True)


@dataclass(frozen=True)
class DeleteOutcome:
    """Result of a successful optimistic delete."""

    conversation_id: str
    index: int


class ChatListReconciler:
    """Ordered, UI-facing list of one user's conversations."""

    def __init__(self) -> None:
        self._items: list[ConversationSummary] = []
        self._pending_delete: str | None = None

    @property
    def items(self) -> list[ConversationSummary]:
        return list(self._items)

    @property
    def delete_in_flight(self) -> bool:
        return self._pending_delete is not None

    @property
    def swipe_enabled(self) -> bool:
        return not self.delete_in_flight

    def ids(self) -> list[str]:
        return [item.conversation_id for item in self._items]

    def apply_snapshot(self, value: Any) -> None:
        """Apply a user-chats/{uid} snapshot from the live subscription."""
        incoming = [s for s in summaries_from_snapshot(value) if s.conversation_id]

        if not self.delete_in_flight:
            self._items = _sort_newest_first(incoming)
            return

        known = set(self.ids())
        added = [
            s
            for s in incoming
            if s.conversation_id not in known and s.conversation_id != self._pending_delete
        ]
        if added:
            self._items = _sort_newest_first(self._items + added)
        logger.debug("chat_list_merged_in_flight", added=len(added))

    def delete_at(self, index: int, backend_delete: Callable[[str], None]) -> DeleteOutcome:
        """Optimistically remove the entry at index and delete it in the backend.

        backend_delete receives the conversation id and raises on failure.

        Raises:
            OperationInFlightError: If another delete has not resolved yet.
            InvalidRequestError: If index is out of range.
            StaleLocalStateError: If the backend delete failed; the entry has
                been restored at its index, or appended if the index is no
                longer valid.
        """
        if self.delete_in_flight:
            raise OperationInFlightError("A conversation delete is already in progress")
        if not 0 <= index < len(self._items):
            raise InvalidRequestError(f"No conversation at position {index}")

        removed = self._items.pop(index)
        self._pending_delete = removed.conversation_id
        try:
            backend_delete(removed.conversation_id)
        except Exception as e:
            self.restore(removed, index)
            logger.warning(
                "chat_delete_rolled_back",
                conversation_id=removed.conversation_id,
                error=str(e),
            )
            raise StaleLocalStateError(
                f"Failed to delete conversation {removed.conversation_id}: {e}"
            ) from e
        finally:
            self._pending_delete = None

        logger.info("chat_deleted", conversation_id=removed.conversation_id)
        return DeleteOutcome(conversation_id=removed.conversation_id, index=index)

    def restore(self, summary: ConversationSummary, index: int) -> None:
        """Reinsert a removed entry at index, or append it if index is no longer valid."""
        # A snapshot may have re-added it already
        if summary.conversation_id in self.ids():
            return
        if 0 <= index <= len(self._items):
            self._items.insert(index, summary)
        else:
            self._items.append(summary)

    def filtered(
        self,
        query: str | None,
        username_for: Callable[[str], str | None],
        user_id: str | None = None,
    ) -> list[ConversationSummary]:
        """Current items matching a search query."""
        return filter_summaries(self._items, query, username_for, user_id)
