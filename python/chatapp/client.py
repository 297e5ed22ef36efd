"""Client facade for one authenticated session.

Wires settings, logging, the tree store, blob storage and the services
together, and is the operation boundary: every public operation returns an
OperationResult instead of raising, so no core failure crashes the caller.
Core errors become their user-presentable message; anything unexpected is
logged with its traceback and reported as a generic failure.

Usage:
    client = create_client()
    client.sign_in(AuthSession(user_id="u1", phone_number="+447700900123"))
    result = client.open_chat_with("u2")
    if result.ok:
        client.send_text(result.value, "u2", "hi")
"""

import time
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Generic, TypeVar

from chatapp.config import Settings, get_settings
from chatapp.errors import (
    ERROR_KIND_TO_USER_MESSAGE,
    ChatError,
    ErrorKind,
    InvalidRequestError,
    NotAuthenticatedError,
    describe_error,
)
from chatapp.logging import (
    clear_session_context,
    configure_logging,
    get_logger,
    set_conversation_id,
    set_session_context,
)
from chatapp.schemas.contact import MatchedContact
from chatapp.schemas.conversation import ConversationSummary
from chatapp.schemas.identity import UserIdentity, UserStatus
from chatapp.schemas.message import Message
from chatapp.services import directory
from chatapp.services.chat_list import ChatListReconciler, DeleteOutcome
from chatapp.services.conversations import (
    RepairReport,
    delete_summary,
    reconcile_summaries,
    resolve_or_create_conversation,
)
from chatapp.services.matching import (
    ContactMatcher,
    ContactSource,
    filter_contacts,
    load_and_match,
)
from chatapp.services.messages import MessageStore
from chatapp.services.presence import PresenceTracker
from chatapp.services.uploads import upload_chat_image, upload_profile_image
from chatapp.storage.client import BlobStorageBase, get_storage_client
from chatapp.store import get_tree_store, paths
from chatapp.store.base import Subscription, TreeStoreBase

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AuthSession:
    """Verified identity handed over by the authentication provider."""

    user_id: str
    phone_number: str


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a client operation."""

    ok: bool
    value: T | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error_kind: ErrorKind | None, message: str) -> "OperationResult[T]":
        return cls(ok=False, error_kind=error_kind, message=message)


class ChatClient:
    """Chat core entry point for the UI layer."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: TreeStoreBase | None = None,
        storage: BlobStorageBase | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store or get_tree_store(self.settings)
        self.storage = storage or get_storage_client(self.settings)
        self.messages = MessageStore(self.store)
        self.matcher = ContactMatcher(self.store, self.settings.contact_match_timeout_s)
        self.chat_list = ChatListReconciler()
        self.session: AuthSession | None = None
        self._sleep = sleep
        self._presence: PresenceTracker | None = None
        self._subscriptions: list[Subscription] = []
        self._usernames: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Boundary helpers
    # -------------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], T]) -> OperationResult[T]:
        try:
            return OperationResult.success(fn())
        except ChatError as e:
            return OperationResult.failure(e.kind, describe_error(e, operation))
        except Exception as e:
            return OperationResult.failure(None, describe_error(e, operation))

    def _require_session(self) -> AuthSession:
        if self.session is None:
            raise NotAuthenticatedError()
        return self.session

    @property
    def user_id(self) -> str:
        return self._require_session().user_id

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def is_registered(self, phone_number: str) -> bool:
        """Whether a phone number already has an account. Fails open."""
        try:
            phone_number = directory.registration_phone_number(phone_number)
        except InvalidRequestError:
            return False
        return directory.phone_number_is_registered(self.store, phone_number)

    def sign_in(
        self, session: AuthSession, display_name: str | None = None
    ) -> OperationResult[UserIdentity]:
        """Start a session for a verified identity.

        Resolves the directory record, goes online, starts presence tracking
        and subscribes the conversation list.
        """

        def _sign_in() -> UserIdentity:
            phone_number = directory.registration_phone_number(session.phone_number)
            already_signed_in = self.session is not None and self.session.user_id == session.user_id
            if self.session is not None and not already_signed_in:
                self._end_session()
            set_session_context(session.user_id)
            identity = directory.resolve_or_create_identity(
                self.store, session.user_id, phone_number, display_name
            )
            if already_signed_in:
                return identity
            self.session = session
            self.store.connect()
            if self._presence is None:
                self._presence = PresenceTracker(self.store, session.user_id)
            self._presence.start()
            self._subscriptions.append(
                self.store.subscribe(
                    paths.user_chats_path(session.user_id), self.chat_list.apply_snapshot
                )
            )
            logger.info("signed_in")
            return identity

        return self._run("Sign in", _sign_in)

    def close(self) -> None:
        """End the session and release the matcher worker pool."""
        self._end_session()
        self.matcher.close()

    def _end_session(self) -> None:
        """Cancel subscriptions and record the user offline."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        if self._presence is not None:
            self._presence.stop()
            self._presence = None
        if self.session is not None:
            logger.info("signed_out")
        self.session = None
        self._usernames.clear()
        clear_session_context()

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def open_chat_with(self, target: UserIdentity | str) -> OperationResult[str]:
        """Find or create the conversation with target and return its id."""
        try:
            user_id = self.user_id
        except NotAuthenticatedError as e:
            return OperationResult.failure(e.kind, describe_error(e, "Open chat"))

        resolution = resolve_or_create_conversation(self.store, user_id, target)
        if not resolution.ok:
            kind = resolution.error_kind
            logger.warning("open_chat_failed", error_kind=kind.value if kind else None)
            return OperationResult.failure(
                kind, ERROR_KIND_TO_USER_MESSAGE.get(kind, "Failed to open chat")
            )
        if resolution.failed_paths:
            logger.warning("open_chat_partial", failed_paths=resolution.failed_paths)
        return OperationResult.success(resolution.conversation_id)

    def conversations(self) -> list[ConversationSummary]:
        """Current conversation list, newest first."""
        return self.chat_list.items

    def search_conversations(self, query: str | None) -> list[ConversationSummary]:
        user_id = self.session.user_id if self.session else None
        return self.chat_list.filtered(query, self._username_for, user_id)

    def delete_chat_at(self, index: int) -> OperationResult[DeleteOutcome]:
        """Swipe-to-delete: one-sided, optimistic, rolled back on failure."""

        def _delete() -> DeleteOutcome:
            user_id = self.user_id

            def backend_delete(conversation_id: str) -> None:
                delete_summary(self.store, user_id, conversation_id)

            return self.chat_list.delete_at(index, backend_delete)

        return self._run("Delete chat", _delete)

    def repair_conversation(
        self, conversation_id: str, other_user_id: str
    ) -> OperationResult[RepairReport]:
        return self._run(
            "Repair conversation",
            lambda: reconcile_summaries(self.store, conversation_id, self.user_id, other_user_id),
        )

    def _username_for(self, user_id: str) -> str | None:
        if user_id not in self._usernames:
            try:
                identity = directory.get_identity(self.store, user_id)
            except ChatError as e:
                logger.warning("username_lookup_failed", other_user_id=user_id, error=e.message)
                return None
            if identity is None:
                return None
            self._usernames[user_id] = identity.display_name
        return self._usernames[user_id]

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def send_text(
        self, conversation_id: str, recipient_id: str, text: str
    ) -> OperationResult[Message]:
        set_conversation_id(conversation_id)
        return self._run(
            "Send message",
            lambda: self.messages.send_text(conversation_id, self.user_id, recipient_id, text),
        )

    def send_image(
        self,
        conversation_id: str,
        recipient_id: str,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> OperationResult[Message]:
        """Upload an image (with retries) and send it as a message."""
        set_conversation_id(conversation_id)

        def _send() -> Message:
            user_id = self.user_id
            url = upload_chat_image(
                self.storage, conversation_id, data, content_type, sleep=self._sleep
            )
            return self.messages.send_image(conversation_id, user_id, recipient_id, url)

        return self._run("Send image", _send)

    def mark_read(self, conversation_id: str) -> OperationResult[None]:
        return self._run(
            "Mark read", lambda: self.messages.mark_all_read(conversation_id, self.user_id)
        )

    def subscribe_messages(
        self, conversation_id: str, callback: Callable[[list[Message]], None]
    ) -> Subscription:
        """Live message list of a conversation; cancelled on close()."""
        subscription = self.messages.subscribe_messages(conversation_id, callback)
        self._subscriptions.append(subscription)
        return subscription

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def find_contacts(
        self, source: ContactSource, query: str | None = None
    ) -> OperationResult[list[MatchedContact]]:
        """Match the device address book against the directory.

        The address book is read and matched off the calling thread. The whole
        wait is bounded by CONTACT_MATCH_TIMEOUT_S; a source that never returns
        yields no matches.
        """

        def _find() -> list[MatchedContact]:
            session = self._require_session()
            future = load_and_match(source, self.matcher, session.phone_number, session.user_id)
            timeout_s = self.settings.contact_match_timeout_s
            try:
                matches = future.result(timeout=timeout_s)
            except FutureTimeoutError:
                future.cancel()
                logger.warning("contact_load_timed_out", timeout_s=timeout_s)
                matches = []
            return filter_contacts(matches, query)

        return self._run("Find contacts", _find)

    def list_users(self, query: str | None = None) -> OperationResult[list[UserIdentity]]:
        """Directory listing for the new-chat screen, excluding the signed-in user."""
        return self._run(
            "Load users",
            lambda: directory.search_directory(
                directory.list_directory(self.store, exclude_user_id=self.user_id), query
            ),
        )

    # -------------------------------------------------------------------------
    # Profile and account
    # -------------------------------------------------------------------------

    def update_profile(
        self,
        display_name: str,
        status: UserStatus | str,
        image: bytes | None = None,
        content_type: str = "image/jpeg",
    ) -> OperationResult[None]:
        """Edit the profile, uploading a new profile image first when given."""

        def _update() -> None:
            user_id = self.user_id
            image_ref = None
            if image is not None:
                image_ref = upload_profile_image(
                    self.storage, user_id, image, content_type, sleep=self._sleep
                )
            directory.update_profile(self.store, user_id, display_name, status, image_ref)
            self._usernames.pop(user_id, None)

        return self._run("Update profile", _update)

    def update_push_token(self, token: str) -> OperationResult[bool]:
        """Persist a new push token (fire-and-forget)."""
        return self._run(
            "Update push token",
            lambda: directory.update_push_token(self.store, self.user_id, token),
        )

    def delete_account(self) -> OperationResult[directory.AccountDeletionReport]:
        """Delete the signed-in user's data and end the session."""

        def _delete() -> directory.AccountDeletionReport:
            user_id = self.user_id
            # Stop presence first so its offline write cannot recreate the record
            if self._presence is not None:
                self._presence.stop()
                self._presence = None
            self.store.cancel_on_disconnect(paths.user_path(user_id))
            report = directory.delete_account(self.store, user_id, self.storage)
            self._end_session()
            return report

        return self._run("Delete account", _delete)


def create_client(settings: Settings | None = None) -> ChatClient:
    """Configure logging and build a client from settings.

    Entry point for embedding applications; tests construct ChatClient
    directly with injected backends.
    """
    settings = settings or get_settings()
    configure_logging(json_format=settings.log_json)
    return ChatClient(settings=settings)
