"""Message store and ordering.

Appends immutable messages to messages/{conversation_id} and keeps both
participants' ConversationSummary in step:

- sender summary: lastMessage / lastMessageTime, unread count untouched
- recipient summary: lastMessage / lastMessageTime and unreadCount + 1

Each summary is updated with one atomic transact on its node, so concurrent
sends cannot under-count. The two summaries are still independent writes: a
failure on one side is logged as a partial write failure and not rolled back.

A provisional summary (lastMessageTime == 0, written by the resolver) is
finalized by the first send. On the recipient side the reserved unread count
of 1 is kept instead of being incremented; on the sender side it drops to 0.
A missing summary is recreated in full.

Read state is tracked per conversation: mark_all_read zeroes the reader's
unread count and never touches per-message isRead flags.
"""

from collections.abc import Callable
from typing import Any

from chatapp.errors import InvalidRequestError, LookupFailedError, WriteFailedError
from chatapp.logging import get_logger
from chatapp.schemas.conversation import ConversationSummary
from chatapp.schemas.message import ImagePayload, Message, MessageBody, TextPayload
from chatapp.store import paths
from chatapp.store.base import StoreError, Subscription, TreeStoreBase

logger = get_logger(__name__)


def sort_messages(messages: list[Message]) -> list[Message]:
    """Sort ascending by sent_at; equal timestamps keep arrival order."""
    return sorted(messages, key=lambda message: message.sent_at)


def messages_from_snapshot(conversation_id: str, value: Any) -> list[Message]:
    """Parse a messages/{conversation_id} snapshot in stored (arrival) order."""
    if not isinstance(value, dict):
        return []
    messages = []
    for message_id, record in value.items():
        if not isinstance(record, dict):
            continue
        try:
            messages.append(Message.from_tree(conversation_id, message_id, record))
        except ValueError as e:
            logger.warning("message_invalid", message_id=message_id, error=str(e))
    return messages


class MessageStore:
    """Sends, lists and subscribes to messages of conversations."""

    def __init__(self, store: TreeStoreBase, clock: Callable[[], int] | None = None):
        self._store = store
        self._clock = clock or store.server_timestamp

    def send(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        body: MessageBody,
    ) -> Message:
        """Append a message and update both summaries.

        Returns:
            The stored message.

        Raises:
            InvalidRequestError: If the message is empty or addressed to the sender.
            WriteFailedError: If the message itself could not be written.
        """
        if sender_id == recipient_id:
            raise InvalidRequestError("Sender and recipient must differ")
        if isinstance(body, TextPayload) and not body.text.strip():
            raise InvalidRequestError("Message text must not be empty")
        if isinstance(body, ImagePayload) and not body.image_url:
            raise InvalidRequestError("Image URL must not be empty")

        message = Message(
            id=self._store.push_key(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            body=body,
            sent_at=self._clock(),
        )

        try:
            self._store.set(paths.message_path(conversation_id, message.id), message.to_tree())
        except StoreError as e:
            raise WriteFailedError(f"Failed to send message: {e.message}") from e

        participants = [sender_id, recipient_id]
        self._update_summary(sender_id, message, participants, increment_unread=False)
        self._update_summary(recipient_id, message, participants, increment_unread=True)

        logger.info(
            "message_sent",
            conversation_id=conversation_id,
            message_id=message.id,
            kind=message.body.kind,
        )
        return message

    def send_text(
        self, conversation_id: str, sender_id: str, recipient_id: str, text: str
    ) -> Message:
        return self.send(conversation_id, sender_id, recipient_id, TextPayload(text=text.strip()))

    def send_image(
        self, conversation_id: str, sender_id: str, recipient_id: str, image_url: str
    ) -> Message:
        body = ImagePayload(image_url=image_url)
        return self.send(conversation_id, sender_id, recipient_id, body)

    def _update_summary(
        self,
        owner_id: str,
        message: Message,
        participants: list[str],
        increment_unread: bool,
    ) -> None:
        path = paths.summary_path(owner_id, message.conversation_id)

        def apply(current: Any) -> dict[str, Any]:
            existing = (
                ConversationSummary.from_tree(current)
                if isinstance(current, dict) and current
                else None
            )
            provisional = existing is None or existing.last_message_at == 0
            if not increment_unread:
                # Sending never adds unread; a provisional reservation is released
                unread = 0 if provisional else existing.unread_count
            elif provisional:
                unread = max(existing.unread_count if existing else 0, 1)
            else:
                unread = existing.unread_count + 1
            return ConversationSummary(
                conversation_id=message.conversation_id,
                participant_ids=existing.participant_ids if existing else participants,
                last_message_text=message.preview_text,
                last_message_at=message.sent_at,
                unread_count=unread,
            ).to_tree()

        try:
            self._store.transact(path, apply)
        except StoreError as e:
            logger.warning(
                "partial_write_failure",
                conversation_id=message.conversation_id,
                path=path,
                error=e.message,
            )

    def mark_all_read(self, conversation_id: str, reader_id: str) -> None:
        """Zero the reader's own unread count. The other summary is untouched.

        Raises:
            WriteFailedError: If the write fails.
        """

        def clear_unread(current: Any) -> Any:
            # A deleted summary stays deleted
            if not isinstance(current, dict) or not current:
                return None
            return {**current, "unreadCount": 0}

        try:
            self._store.transact(paths.summary_path(reader_id, conversation_id), clear_unread)
        except StoreError as e:
            raise WriteFailedError(f"Failed to mark conversation read: {e.message}") from e
        logger.debug("conversation_marked_read", conversation_id=conversation_id)

    def list_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in display order.

        Raises:
            LookupFailedError: If the read fails.
        """
        try:
            value = self._store.get(paths.messages_path(conversation_id))
        except StoreError as e:
            raise LookupFailedError(f"Failed to load messages: {e.message}") from e
        return sort_messages(messages_from_snapshot(conversation_id, value))

    def subscribe_messages(
        self, conversation_id: str, callback: Callable[[list[Message]], None]
    ) -> Subscription:
        """Deliver the full, re-sorted message list now and on every change."""

        def deliver(value: Any) -> None:
            callback(sort_messages(messages_from_snapshot(conversation_id, value)))

        return self._store.subscribe(paths.messages_path(conversation_id), deliver)
