"""Conversation resolver service layer.

Finds or creates the single conversation between two users and maintains the
two denormalized ConversationSummary records (one under each participant).

Resolution is an explicit state machine per request:

    START -> SELF_CHECK -> SCAN_EXISTING -> FOUND
                                         -> NOT_FOUND -> CREATE -> CREATED
    any state -> ERROR(kind)

Key invariants:
- A read failure while scanning never falls back to creating a conversation
  (duplicates are worse than unavailability).
- FOUND performs no writes.
- Creation writes both summaries create-if-absent, so a summary that already
  exists under the same id is never overwritten with provisional values.
- Conversation ids are a hash of the sorted participant ids when
  DETERMINISTIC_CONVERSATION_IDS is on, so concurrent first contacts from both
  sides converge on the same id. Otherwise a push key is generated.
"""

import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatapp.config import get_settings
from chatapp.errors import ErrorKind, LookupFailedError, NotFoundError, WriteFailedError
from chatapp.logging import get_logger
from chatapp.schemas.conversation import Conversation, ConversationSummary
from chatapp.schemas.identity import UserIdentity
from chatapp.schemas.message import Message
from chatapp.services.directory import get_identity
from chatapp.services.phone import normalize
from chatapp.store import paths
from chatapp.store.base import StoreError, TreeStoreBase

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Length of the hex digest used as a deterministic conversation id
CONVERSATION_ID_LENGTH = 32

# Unread count reserved for the recipient until the first send finalizes it
PROVISIONAL_RECIPIENT_UNREAD = 1


class ResolutionState(str, Enum):
    START = "START"
    SELF_CHECK = "SELF_CHECK"
    SCAN_EXISTING = "SCAN_EXISTING"
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    CREATE = "CREATE"
    CREATED = "CREATED"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset(
    {ResolutionState.FOUND, ResolutionState.CREATED, ResolutionState.ERROR}
)


@dataclass
class Resolution:
    """Outcome of resolve_or_create_conversation.

    Attributes:
        state: Terminal state reached.
        conversation_id: Set for FOUND and CREATED.
        error_kind: Set for ERROR.
        created: True if this call created the summaries.
        trace: Every state visited, in order.
        failed_paths: Summary writes that failed while a sibling succeeded.
    """

    state: ResolutionState = ResolutionState.START
    conversation_id: str | None = None
    error_kind: ErrorKind | None = None
    created: bool = False
    trace: list[ResolutionState] = field(default_factory=lambda: [ResolutionState.START])
    failed_paths: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state in (ResolutionState.FOUND, ResolutionState.CREATED)

    def advance(self, state: ResolutionState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Resolution already finished in {self.state.value}")
        self.state = state
        self.trace.append(state)

    def fail(self, kind: ErrorKind) -> "Resolution":
        self.error_kind = kind
        self.advance(ResolutionState.ERROR)
        return self


# =============================================================================
# Conversation ids
# =============================================================================


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Deterministic conversation id for an unordered pair of user ids."""
    low, high = sorted((user_a, user_b))
    digest = hashlib.sha256(f"{low}\x00{high}".encode()).hexdigest()
    return digest[:CONVERSATION_ID_LENGTH]


def _new_conversation_id(store: TreeStoreBase, requester_id: str, target_id: str) -> str:
    if get_settings().deterministic_conversation_ids:
        return conversation_id_for(requester_id, target_id)
    return store.push_key()


# =============================================================================
# Summaries
# =============================================================================


def list_summaries(store: TreeStoreBase, user_id: str) -> list[ConversationSummary]:
    """Read a user's conversation summaries, in stored order.

    Entries without a conversation id fall back to their key.

    Raises:
        LookupFailedError: If the summaries cannot be read.
    """
    try:
        value = store.get(paths.user_chats_path(user_id))
    except StoreError as e:
        raise LookupFailedError(f"Failed to load conversations: {e.message}") from e
    return summaries_from_snapshot(value)


def summaries_from_snapshot(value: Any) -> list[ConversationSummary]:
    """Parse a user-chats/{uid} snapshot into summaries, skipping malformed entries."""
    if not isinstance(value, dict):
        return []
    summaries = []
    for key, record in value.items():
        if not isinstance(record, dict):
            continue
        try:
            summary = ConversationSummary.from_tree(record)
        except ValueError as e:
            logger.warning("summary_invalid", key=key, error=str(e))
            continue
        if not summary.conversation_id:
            summary = summary.model_copy(update={"conversation_id": key})
        summaries.append(summary)
    return summaries


def _provisional_summary(conversation: Conversation, unread_count: int) -> dict[str, Any]:
    return ConversationSummary(
        conversation_id=conversation.conversation_id,
        participant_ids=list(conversation.participant_ids),
        last_message_text="",
        last_message_at=0,
        unread_count=unread_count,
    ).to_tree()


def _create_if_absent(store: TreeStoreBase, path: str, value: dict[str, Any]) -> None:
    def keep_existing(current: Any) -> Any:
        return current if isinstance(current, dict) and current else value

    store.transact(path, keep_existing)


# =============================================================================
# Resolver
# =============================================================================


def resolve_or_create_conversation(
    store: TreeStoreBase,
    requester_id: str,
    target: UserIdentity | str,
) -> Resolution:
    """Find the conversation between requester and target, creating it if needed.

    Args:
        store: Tree store.
        requester_id: The signed-in user.
        target: The other user, as an identity or an id.

    Returns:
        A Resolution in a terminal state. Never raises for backend errors.
    """
    resolution = Resolution()

    # START: load both phone numbers for the self-chat guard
    try:
        requester = get_identity(store, requester_id)
        if isinstance(target, str):
            target_identity = get_identity(store, target)
            if target_identity is None:
                raise NotFoundError(f"User {target} not found")
        else:
            target_identity = target
    except LookupFailedError as e:
        logger.warning("conversation_lookup_failed", stage="start", error=e.message)
        return resolution.fail(ErrorKind.LOOKUP_FAILED)
    except NotFoundError as e:
        logger.warning("conversation_target_missing", error=e.message)
        return resolution.fail(ErrorKind.NOT_FOUND)

    resolution.advance(ResolutionState.SELF_CHECK)
    requester_phone = normalize(requester.phone_number) if requester else ""
    target_phone = normalize(target_identity.phone_number)
    if target_identity.id == requester_id or (requester_phone and requester_phone == target_phone):
        logger.info("self_chat_rejected", user_id=requester_id)
        return resolution.fail(ErrorKind.SELF_CHAT_FORBIDDEN)

    resolution.advance(ResolutionState.SCAN_EXISTING)
    try:
        summaries = list_summaries(store, requester_id)
    except LookupFailedError as e:
        logger.warning("conversation_lookup_failed", stage="scan_existing", error=e.message)
        return resolution.fail(ErrorKind.LOOKUP_FAILED)

    for summary in summaries:
        if target_identity.id in summary.participant_ids:
            resolution.conversation_id = summary.conversation_id
            resolution.advance(ResolutionState.FOUND)
            logger.debug("conversation_found", conversation_id=summary.conversation_id)
            return resolution

    resolution.advance(ResolutionState.NOT_FOUND)
    return _create_conversation(store, requester_id, target_identity.id, resolution)


def _create_conversation(
    store: TreeStoreBase,
    requester_id: str,
    target_id: str,
    resolution: Resolution,
) -> Resolution:
    resolution.advance(ResolutionState.CREATE)
    conversation = Conversation(
        conversation_id=_new_conversation_id(store, requester_id, target_id),
        participant_ids=(requester_id, target_id),
    )
    conversation_id = conversation.conversation_id

    requester_path = paths.summary_path(requester_id, conversation_id)
    try:
        _create_if_absent(store, requester_path, _provisional_summary(conversation, 0))
    except StoreError as e:
        logger.error(
            "conversation_create_failed", conversation_id=conversation_id, error=e.message
        )
        return resolution.fail(ErrorKind.WRITE_FAILED)

    target_path = paths.summary_path(target_id, conversation_id)
    try:
        _create_if_absent(
            store, target_path, _provisional_summary(conversation, PROVISIONAL_RECIPIENT_UNREAD)
        )
    except StoreError as e:
        # Recipient summary is recreated by the first send or a repair pass
        logger.warning(
            "partial_write_failure",
            conversation_id=conversation_id,
            path=target_path,
            error=e.message,
        )
        resolution.failed_paths.append(target_path)

    resolution.conversation_id = conversation_id
    resolution.created = True
    resolution.advance(ResolutionState.CREATED)
    logger.info("conversation_created", conversation_id=conversation_id)
    return resolution


# =============================================================================
# One-sided delete
# =============================================================================


def delete_summary(store: TreeStoreBase, user_id: str, conversation_id: str) -> None:
    """Delete the user's own summary only.

    The other participant's summary and the messages are left in place.

    Raises:
        WriteFailedError: If the delete fails.
    """
    try:
        store.remove(paths.summary_path(user_id, conversation_id))
    except StoreError as e:
        raise WriteFailedError(f"Failed to delete conversation: {e.message}") from e
    logger.info("summary_deleted", user_id=user_id, conversation_id=conversation_id)


# =============================================================================
# Repair pass
# =============================================================================


@dataclass
class RepairReport:
    """Outcome of reconcile_summaries."""

    conversation_id: str
    repaired_paths: list[str] = field(default_factory=list)
    recreated_for: list[str] = field(default_factory=list)
    failed_paths: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        """True if nothing needed repair and nothing failed."""
        return not (self.repaired_paths or self.recreated_for or self.failed_paths)


def _read_summary(
    store: TreeStoreBase, user_id: str, conversation_id: str
) -> ConversationSummary | None:
    try:
        value = store.get(paths.summary_path(user_id, conversation_id))
    except StoreError as e:
        raise LookupFailedError(f"Failed to load summary: {e.message}") from e
    if not isinstance(value, dict):
        return None
    return ConversationSummary.from_tree(value)


def _latest_message(store: TreeStoreBase, conversation_id: str) -> Message | None:
    try:
        value = store.get(paths.messages_path(conversation_id))
    except StoreError as e:
        logger.warning(
            "repair_messages_read_failed", conversation_id=conversation_id, error=e.message
        )
        return None
    latest = None
    for message_id, record in (value or {}).items():
        if not isinstance(record, dict):
            continue
        try:
            message = Message.from_tree(conversation_id, message_id, record)
        except (TypeError, ValueError) as e:
            logger.warning("message_invalid", message_id=message_id, error=str(e))
            continue
        if latest is None or message.sent_at >= latest.sent_at:
            latest = message
    return latest


def reconcile_summaries(
    store: TreeStoreBase,
    conversation_id: str,
    user_a: str,
    user_b: str,
    recreate_missing: bool = False,
) -> RepairReport:
    """Repair divergence between the two summaries of a conversation.

    Converges conversation id, participants and the last-message fields to the
    newest information available (either summary, or the newest message in
    the timeline). Unread counts are per side and are never touched.

    A missing side is a legitimate one-sided delete, so it is only recreated
    when recreate_missing is set.

    Raises:
        LookupFailedError: If either summary cannot be read.
    """
    report = RepairReport(conversation_id=conversation_id)
    sides = {
        user_a: _read_summary(store, user_a, conversation_id),
        user_b: _read_summary(store, user_b, conversation_id),
    }
    present = [s for s in sides.values() if s is not None]
    if not present:
        return report

    target_text, target_at = "", 0
    for summary in present:
        if summary.last_message_at > target_at:
            target_text, target_at = summary.last_message_text, summary.last_message_at
    latest = _latest_message(store, conversation_id)
    if latest is not None and latest.sent_at > target_at:
        target_text, target_at = latest.preview_text, latest.sent_at

    participants = [user_a, user_b]
    for user_id, summary in sides.items():
        path = paths.summary_path(user_id, conversation_id)
        if summary is None:
            if not recreate_missing:
                continue
            value = ConversationSummary(
                conversation_id=conversation_id,
                participant_ids=participants,
                last_message_text=target_text,
                last_message_at=target_at,
                unread_count=0,
            ).to_tree()
            try:
                store.set(path, value)
                report.recreated_for.append(user_id)
            except StoreError as e:
                logger.warning("partial_write_failure", path=path, error=e.message)
                report.failed_paths.append(path)
            continue

        fields: dict[str, Any] = {}
        if summary.conversation_id != conversation_id:
            fields["chatId"] = conversation_id
        if sorted(summary.participant_ids) != sorted(participants):
            fields["participants"] = participants
        if summary.last_message_at < target_at:
            fields["lastMessage"] = target_text
            fields["lastMessageTime"] = target_at
        if not fields:
            continue
        try:
            store.update(path, fields)
            report.repaired_paths.append(path)
        except StoreError as e:
            logger.warning("partial_write_failure", path=path, error=e.message)
            report.failed_paths.append(path)

    logger.info(
        "summaries_reconciled",
        conversation_id=conversation_id,
        repaired=len(report.repaired_paths),
        recreated=len(report.recreated_for),
        failed=len(report.failed_paths),
    )
    return report


# =============================================================================
# Search
# =============================================================================


def filter_summaries(
    summaries: list[ConversationSummary],
    query: str | None,
    username_for: Callable[[str], str | None],
    user_id: str | None = None,
) -> list[ConversationSummary]:
    """Filter summaries by last message text or the other participant's name.

    Args:
        username_for: Resolves a user id to a display name (None if unknown).
        user_id: The viewing user; their own name is not searched.
    """
    needle = (query or "").strip().casefold()
    if not needle:
        return list(summaries)

    matches = []
    for summary in summaries:
        if needle in summary.last_message_text.casefold():
            matches.append(summary)
            continue
        for participant in summary.participant_ids:
            if participant == user_id:
                continue
            name = username_for(participant) or ""
            if needle in name.casefold():
                matches.append(summary)
                break
    return matches
