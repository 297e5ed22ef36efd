"""Identity directory service.

Maps user id -> profile (users/{uid}) and phone -> user id
(phone-to-users/{phone}). The UserIdentity.phoneNumber field is
authoritative; the phone index is a lookup aid that may be stale or absent.

Fail modes:
- resolve_or_create_identity: directory writes are fire-and-forget. A failed
  phone index write does not roll back the identity write (PartialWriteFailure,
  logged only).
- phone_number_is_registered: fails open. A lookup error reads as
  "not registered" so registration is never blocked by the index.
- get_identity / list_directory: read failures raise LookupFailedError.
"""

from dataclasses import dataclass, field
from typing import Any

from chatapp.errors import InvalidRequestError, LookupFailedError, WriteFailedError
from chatapp.logging import get_logger
from chatapp.schemas.conversation import ConversationSummary
from chatapp.schemas.identity import (
    DEFAULT_PROFILE_IMAGE,
    PhoneIndexEntry,
    UserIdentity,
    UserStatus,
)
from chatapp.services.phone import (
    format_registration_number,
    is_valid_registration_number,
    normalize,
    phone_index_key,
)
from chatapp.storage.client import BlobStorageBase
from chatapp.store import paths
from chatapp.store.base import StoreError, TreeStoreBase

logger = get_logger(__name__)

DEFAULT_NAME_PREFIX = "User_"
DEFAULT_NAME_SUFFIX_LENGTH = 4


def default_display_name(user_id: str) -> str:
    """Generated display name for a new identity, derived from its id."""
    return f"{DEFAULT_NAME_PREFIX}{user_id[-DEFAULT_NAME_SUFFIX_LENGTH:]}"


def _index_entry(phone_number: str, user_id: str) -> PhoneIndexEntry | None:
    index_key = phone_index_key(phone_number)
    if not index_key:
        return None
    return PhoneIndexEntry(normalized_phone=index_key, user_id=user_id)


def get_identity(store: TreeStoreBase, user_id: str) -> UserIdentity | None:
    """Load a user record.

    Returns:
        The identity, or None if no record exists.

    Raises:
        LookupFailedError: If the read fails.
    """
    try:
        value = store.get(paths.user_path(user_id))
    except StoreError as e:
        raise LookupFailedError(f"Failed to load user {user_id}: {e.message}") from e

    if not isinstance(value, dict):
        return None
    try:
        return UserIdentity.from_tree(user_id, value)
    except ValueError as e:
        raise LookupFailedError(f"Malformed user record {user_id}: {e}") from e


def resolve_or_create_identity(
    store: TreeStoreBase,
    user_id: str,
    phone_number: str,
    display_name: str | None = None,
) -> UserIdentity:
    """Create the directory record for a verified identity, or touch lastSeen.

    Called after every successful phone verification. Idempotent: repeated
    calls with the same id only refresh lastSeen.

    Args:
        store: Tree store.
        user_id: Stable id from the identity provider.
        phone_number: Verified phone number.
        display_name: Name chosen at registration; generated from the id if empty.

    Returns:
        The resolved identity.

    Raises:
        LookupFailedError: If the existing record cannot be read.
    """
    existing = get_identity(store, user_id)
    now = store.server_timestamp()

    if existing is not None:
        try:
            store.set(paths.user_field_path(user_id, "lastSeen"), now)
        except StoreError as e:
            logger.warning("last_seen_update_failed", user_id=user_id, error=e.message)
            return existing
        return existing.model_copy(update={"last_seen_at": now})

    identity = UserIdentity(
        id=user_id,
        phone_number=phone_number,
        display_name=display_name or default_display_name(user_id),
        profile_image_ref=DEFAULT_PROFILE_IMAGE,
        status=UserStatus.AVAILABLE,
        last_seen_at=now,
    )

    try:
        store.set(paths.user_path(user_id), identity.to_tree())
    except StoreError as e:
        logger.error("identity_create_failed", user_id=user_id, error=e.message)
        return identity

    entry = _index_entry(phone_number, user_id)
    if entry is not None:
        index_path = paths.phone_index_path(entry.normalized_phone)
        try:
            store.set(index_path, entry.user_id)
        except StoreError as e:
            # Identity stays; matching falls back to the directory scan
            logger.warning(
                "partial_write_failure",
                user_id=user_id,
                path=index_path,
                error=e.message,
            )

    logger.info("identity_created", user_id=user_id)
    return identity


def registration_phone_number(raw: str) -> str:
    """Canonical form of a number entered at registration.

    Raises:
        InvalidRequestError: If the number is not "+" followed by enough digits.
    """
    phone = normalize(format_registration_number(raw))
    if not is_valid_registration_number(phone):
        raise InvalidRequestError(f"Invalid phone number '{raw}'")
    return phone


def phone_number_is_registered(store: TreeStoreBase, phone_number: str) -> bool:
    """Check the phone index for a number. Fails open on lookup errors."""
    index_key = phone_index_key(phone_number)
    if not index_key:
        return False

    try:
        value = store.get(paths.phone_index_path(index_key))
    except StoreError as e:
        logger.warning("phone_lookup_failed_open", error=e.message)
        return False

    return bool(value)


def update_profile(
    store: TreeStoreBase,
    user_id: str,
    display_name: str,
    status: UserStatus | str,
    profile_image_ref: str | None = None,
) -> None:
    """Apply a profile edit.

    Args:
        profile_image_ref: New image URL or DEFAULT_PROFILE_IMAGE; None keeps the current one.

    Raises:
        InvalidRequestError: If the display name is empty or the status unknown.
        WriteFailedError: If the write fails.
    """
    name = display_name.strip()
    if not name:
        raise InvalidRequestError("Display name must not be empty")
    try:
        status = UserStatus(status)
    except ValueError:
        raise InvalidRequestError(f"Unknown status {status!r}") from None

    updates: dict[str, Any] = {"username": name, "status": status.value}
    if profile_image_ref is not None:
        updates["profileImageUrl"] = profile_image_ref

    try:
        store.update(paths.user_path(user_id), updates)
    except StoreError as e:
        raise WriteFailedError(f"Failed to update profile: {e.message}") from e

    logger.info("profile_updated", user_id=user_id, fields=sorted(updates))


def update_push_token(store: TreeStoreBase, user_id: str, token: str) -> bool:
    """Persist the latest push token for a user (fire-and-forget).

    Returns:
        True if the write succeeded.
    """
    try:
        store.set(paths.user_field_path(user_id, "fcmToken"), token)
    except StoreError as e:
        logger.warning("push_token_update_failed", user_id=user_id, error=e.message)
        return False
    return True


def list_directory(store: TreeStoreBase, exclude_user_id: str | None = None) -> list[UserIdentity]:
    """List every registered user, sorted by display name.

    Malformed records are skipped.

    Raises:
        LookupFailedError: If the directory cannot be read.
    """
    try:
        value = store.get(paths.USERS_ROOT)
    except StoreError as e:
        raise LookupFailedError(f"Failed to load directory: {e.message}") from e

    identities = []
    for user_id, record in (value or {}).items():
        if user_id == exclude_user_id or not isinstance(record, dict):
            continue
        try:
            identities.append(UserIdentity.from_tree(user_id, record))
        except ValueError as e:
            logger.warning("directory_record_invalid", record_user_id=user_id, error=str(e))
    identities.sort(key=lambda identity: identity.display_name.casefold())
    return identities


def search_directory(identities: list[UserIdentity], query: str | None) -> list[UserIdentity]:
    """Filter identities whose display name contains query (case-insensitive)."""
    needle = (query or "").strip().casefold()
    if not needle:
        return list(identities)
    return [i for i in identities if needle in i.display_name.casefold()]


@dataclass
class AccountDeletionReport:
    """Outcome of delete_account."""

    user_id: str
    conversations_removed: int = 0
    messages_redacted: int = 0
    failed_paths: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_paths


def delete_account(
    store: TreeStoreBase,
    user_id: str,
    storage: BlobStorageBase | None = None,
) -> AccountDeletionReport:
    """Delete a user's directory data.

    Order: user record, profile image, phone index entry (only if it still
    points at this user), the user's own conversation summaries, and the
    messages this user authored in those conversations. The other
    participant's summaries and messages are left untouched.

    Only the user record removal is fatal; later steps are best-effort and
    recorded in the report.

    Raises:
        LookupFailedError: If the user record cannot be read.
        WriteFailedError: If the user record cannot be removed.
    """
    report = AccountDeletionReport(user_id=user_id)
    identity = get_identity(store, user_id)

    try:
        store.remove(paths.user_path(user_id))
    except StoreError as e:
        raise WriteFailedError(f"Failed to delete user data: {e.message}") from e

    if storage is not None:
        storage.delete_object(paths.profile_image_path(user_id))

    entry = _index_entry(identity.phone_number, user_id) if identity is not None else None
    if entry is not None:
        index_path = paths.phone_index_path(entry.normalized_phone)
        try:
            # Only remove an entry that still points at this user
            if store.get(index_path) == entry.user_id:
                store.remove(index_path)
        except StoreError as e:
            logger.warning("phone_index_cleanup_failed", user_id=user_id, error=e.message)
            report.failed_paths.append(index_path)

    chats_path = paths.user_chats_path(user_id)
    try:
        summaries = store.get(chats_path) or {}
    except StoreError as e:
        logger.warning("account_summaries_read_failed", user_id=user_id, error=e.message)
        report.failed_paths.append(chats_path)
        summaries = {}

    conversation_ids = []
    for key, value in summaries.items():
        if isinstance(value, dict):
            conversation_ids.append(ConversationSummary.from_tree(value).conversation_id or key)

    try:
        store.remove(chats_path)
        report.conversations_removed = len(conversation_ids)
    except StoreError as e:
        logger.warning("account_summaries_remove_failed", user_id=user_id, error=e.message)
        report.failed_paths.append(chats_path)

    for conversation_id in conversation_ids:
        report.messages_redacted += _redact_own_messages(store, conversation_id, user_id, report)

    logger.info(
        "account_deleted",
        user_id=user_id,
        conversations_removed=report.conversations_removed,
        messages_redacted=report.messages_redacted,
        failed_paths=len(report.failed_paths),
    )
    return report


def _redact_own_messages(
    store: TreeStoreBase,
    conversation_id: str,
    user_id: str,
    report: AccountDeletionReport,
) -> int:
    """Remove messages authored by user_id from one conversation."""
    try:
        messages = store.get(paths.messages_path(conversation_id)) or {}
    except StoreError as e:
        logger.warning("account_messages_read_failed", error=e.message)
        report.failed_paths.append(paths.messages_path(conversation_id))
        return 0

    redacted = 0
    for message_id, value in messages.items():
        if not isinstance(value, dict) or value.get("senderId") != user_id:
            continue
        message_path = paths.message_path(conversation_id, message_id)
        try:
            store.remove(message_path)
            redacted += 1
        except StoreError as e:
            logger.warning("account_message_redact_failed", path=message_path, error=e.message)
            report.failed_paths.append(message_path)
    return redacted
