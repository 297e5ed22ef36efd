"""Tests for the ChatClient facade.

Tests cover:
- Session lifecycle and presence
- Operations reporting failures as OperationResult instead of raising
- End-to-end chat flow between two clients sharing one backend
"""

import threading

import pytest

from chatapp.client import AuthSession, ChatClient, OperationResult
from chatapp.config import Settings
from chatapp.errors import ErrorKind
from chatapp.schemas.contact import DeviceContact
from chatapp.services.matching import ContactSource, StaticContactSource
from tests.factories import add_user, summary_of

ALICE = AuthSession(user_id="alice", phone_number="+447700900001")
BOB = AuthSession(user_id="bob", phone_number="+447700900002")

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(store, storage, sleeps):
    clients = []

    def _make() -> ChatClient:
        client = ChatClient(settings=Settings(), store=store, storage=storage, sleep=sleeps.append)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def alice(make_client):
    client = make_client()
    assert client.sign_in(ALICE, display_name="Alice").ok
    return client


@pytest.fixture
def bob(make_client):
    client = make_client()
    assert client.sign_in(BOB, display_name="Bob").ok
    return client


# =============================================================================
# Session
# =============================================================================


class TestSession:
    def test_sign_in_creates_identity_and_goes_online(self, store, make_client):
        client = make_client()
        result = client.sign_in(ALICE, display_name="Alice")

        assert result.ok
        assert result.value.display_name == "Alice"
        assert client.user_id == "alice"
        assert store.get("users/alice/status") == "Online"
        assert client.is_registered("+44 7700 900001")

    def test_national_number_is_registered_in_international_form(self, store, make_client):
        client = make_client()
        assert client.sign_in(AuthSession(user_id="dave", phone_number="7700900004")).ok
        assert store.get("users/dave/phoneNumber") == "+447700900004"
        assert client.is_registered("7700900004")

    def test_invalid_phone_number_rejected(self, store, make_client):
        client = make_client()
        result = client.sign_in(AuthSession(user_id="dave", phone_number="12-34"))

        assert not result.ok
        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert client.session is None
        assert store.get("users/dave") is None
        assert not client.is_registered("12-34")

    def test_operations_require_session(self, make_client):
        client = make_client()
        for result in (
            client.open_chat_with("bob"),
            client.send_text("c1", "bob", "hi"),
            client.delete_chat_at(0),
            client.mark_read("c1"),
        ):
            assert not result.ok
            assert result.error_kind == ErrorKind.NOT_AUTHENTICATED
            assert result.message == "You need to be logged in to do that."

    def test_repeat_sign_in_keeps_session(self, store, alice):
        assert alice.sign_in(ALICE).ok
        assert alice.user_id == "alice"
        assert store.get("users/alice/username") == "Alice"

    def test_switching_user_ends_previous_session(self, store, alice):
        add_user(store, "carol", "+447700900003", "Carol")
        assert alice.sign_in(AuthSession(user_id="carol", phone_number="+447700900003")).ok
        assert alice.user_id == "carol"
        assert store.get("users/alice/status") == "Offline"
        assert store.get("users/carol/status") == "Online"

    def test_close_goes_offline(self, store, alice):
        alice.close()
        assert store.get("users/alice/status") == "Offline"
        assert alice.session is None


# =============================================================================
# Conversations and messages
# =============================================================================


class TestChatFlow:
    def test_open_chat_and_send(self, store, alice, bob):
        opened = alice.open_chat_with("bob")
        assert opened.ok
        cid = opened.value

        sent = alice.send_text(cid, "bob", "hi bob")

        assert sent.ok
        assert [s.conversation_id for s in alice.conversations()] == [cid]
        assert alice.conversations()[0].last_message_text == "hi bob"
        assert bob.conversations()[0].unread_count == 1

        assert bob.mark_read(cid).ok
        assert summary_of(store, "bob", cid).unread_count == 0
        assert bob.conversations()[0].unread_count == 0

    def test_reopening_returns_same_conversation(self, alice, bob):
        first = alice.open_chat_with("bob").value
        assert bob.open_chat_with("alice").value == first

    def test_self_chat_reported(self, alice):
        result = alice.open_chat_with("alice")
        assert result.error_kind == ErrorKind.SELF_CHAT_FORBIDDEN
        assert result.message == "Cannot chat with yourself."

    def test_blank_message_reported(self, alice, bob):
        cid = alice.open_chat_with("bob").value
        result = alice.send_text(cid, "bob", "   ")
        assert result.error_kind == ErrorKind.INVALID_REQUEST

    def test_send_image(self, alice, bob, storage):
        cid = alice.open_chat_with("bob").value
        result = alice.send_image(cid, "bob", b"jpeg-bytes")
        assert result.ok
        assert result.value.body.image_url.startswith(
            f"https://fake-storage.test/download/chat_images/{cid}/"
        )
        assert bob.conversations()[0].last_message_text == "📷 Image"

    def test_send_image_upload_failure(self, alice, bob, storage, sleeps):
        cid = alice.open_chat_with("bob").value
        storage.fail_next_uploads(10)

        result = alice.send_image(cid, "bob", b"jpeg-bytes")

        assert result.error_kind == ErrorKind.UPLOAD_FAILED
        assert result.message == "Failed to upload image."
        assert len(sleeps) == 2
        assert bob.conversations()[0].last_message_at == 0

    def test_unexpected_error_is_reported(self, alice, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(alice.messages, "send_text", boom)
        result = alice.send_text("c1", "bob", "hi")
        assert result == OperationResult(ok=False, message="Send message failed: boom")

    def test_subscribe_messages(self, alice, bob):
        cid = alice.open_chat_with("bob").value
        received = []
        bob.subscribe_messages(cid, received.append)
        alice.send_text(cid, "bob", "hello")
        assert [m.body.text for m in received[-1]] == ["hello"]

    def test_search_conversations_by_name(self, store, alice, bob):
        add_user(store, "carol", "+447700900003", "Carol")
        cid_bob = alice.open_chat_with("bob").value
        alice.open_chat_with("carol")
        assert [s.conversation_id for s in alice.search_conversations("bo")] == [cid_bob]


class TestDeleteChat:
    def test_delete_removes_own_summary_only(self, store, alice, bob):
        cid = alice.open_chat_with("bob").value
        alice.send_text(cid, "bob", "hi")

        result = alice.delete_chat_at(0)

        assert result.ok
        assert result.value.conversation_id == cid
        assert alice.conversations() == []
        assert summary_of(store, "alice", cid) is None
        assert summary_of(store, "bob", cid) is not None
        assert alice.chat_list.swipe_enabled

    def test_failed_delete_rolls_back(self, store, alice, bob):
        cid = alice.open_chat_with("bob").value
        store.fail_writes_under(f"user-chats/alice/{cid}")

        result = alice.delete_chat_at(0)

        assert result.error_kind == ErrorKind.STALE_LOCAL_STATE
        assert [s.conversation_id for s in alice.conversations()] == [cid]

    def test_repair_conversation(self, store, alice, bob):
        cid = alice.open_chat_with("bob").value
        alice.send_text(cid, "bob", "hi")
        store.update(f"user-chats/bob/{cid}", {"lastMessage": "", "lastMessageTime": 1})

        result = alice.repair_conversation(cid, "bob")

        assert result.ok
        assert result.value.repaired_paths == [f"user-chats/bob/{cid}"]
        assert summary_of(store, "bob", cid).last_message_text == "hi"


# =============================================================================
# Contacts and directory
# =============================================================================


class TestContacts:
    def test_find_contacts(self, alice, bob):
        source = StaticContactSource(
            [
                DeviceContact(local_id="1", display_name="Bobby", raw_phone_number="07700900002"),
                DeviceContact(local_id="2", display_name="Me", raw_phone_number="07700900001"),
            ]
        )
        result = alice.find_contacts(source)
        assert result.ok
        assert [(m.id, m.name, m.username) for m in result.value] == [("bob", "Bobby", "Bob")]
        assert alice.find_contacts(source, query="zzz").value == []

    def test_hanging_contact_source_is_bounded(self, store, storage, sleeps):
        release = threading.Event()

        class HangingSource(ContactSource):
            def read_contacts(self):
                release.wait(timeout=5)
                return []

        client = ChatClient(
            settings=Settings(CONTACT_MATCH_TIMEOUT_S=0.2),
            store=store,
            storage=storage,
            sleep=sleeps.append,
        )
        try:
            assert client.sign_in(ALICE).ok
            result = client.find_contacts(HangingSource())
        finally:
            release.set()
            client.close()

        assert result.ok
        assert result.value == []

    def test_list_users_excludes_self(self, store, alice, bob):
        add_user(store, "carol", "+447700900003", "Carol")
        assert [u.id for u in alice.list_users().value] == ["bob", "carol"]
        assert [u.id for u in alice.list_users("car").value] == ["carol"]


# =============================================================================
# Profile and account
# =============================================================================


class TestProfile:
    def test_update_profile_with_image(self, store, alice):
        result = alice.update_profile("Alicia", "Away", image=b"jpeg-bytes")

        assert result.ok
        assert store.get("users/alice/username") == "Alicia"
        assert store.get("users/alice/status") == "Away"
        assert store.get("users/alice/profileImageUrl") == (
            "https://fake-storage.test/download/profile_images/alice/avatar"
        )

    def test_invalid_profile_reported(self, alice):
        assert alice.update_profile("", "Away").error_kind == ErrorKind.INVALID_REQUEST

    def test_update_push_token(self, store, alice):
        assert alice.update_push_token("token-1").value is True
        assert store.get("users/alice/fcmToken") == "token-1"

    def test_delete_account(self, store, storage, alice, bob):
        alice.update_profile("Alice", "Available", image=b"jpeg-bytes")
        cid = alice.open_chat_with("bob").value
        alice.send_text(cid, "bob", "bye")

        result = alice.delete_account()

        assert result.ok
        assert result.value.complete
        assert alice.session is None
        assert store.get("users/alice") is None
        assert store.get("phone-to-users/447700900001") is None
        assert storage.paths() == []
        assert summary_of(store, "bob", cid) is not None

        store.disconnect()
        assert store.get("users/alice") is None
