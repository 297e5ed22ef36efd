"""Tests for the identity directory service."""

import pytest

from chatapp.errors import InvalidRequestError, LookupFailedError, WriteFailedError
from chatapp.schemas.identity import DEFAULT_PROFILE_IMAGE, UserIdentity, UserStatus
from chatapp.services.directory import (
    delete_account,
    get_identity,
    list_directory,
    phone_number_is_registered,
    registration_phone_number,
    resolve_or_create_identity,
    search_directory,
    update_profile,
    update_push_token,
)
from chatapp.store import paths
from tests.factories import add_summary, add_user


class TestResolveOrCreateIdentity:
    def test_creates_record_with_defaults(self, store, clock):
        identity = resolve_or_create_identity(store, "uid-9f3a", "+447700900123")

        assert identity.display_name == "User_9f3a"
        assert identity.status == UserStatus.AVAILABLE
        assert identity.profile_image_ref == DEFAULT_PROFILE_IMAGE
        assert identity.last_seen_at == clock.now
        stored = store.get("users/uid-9f3a")
        assert stored["uid"] == "uid-9f3a"
        assert stored["phoneNumber"] == "+447700900123"
        assert stored["username"] == "User_9f3a"
        assert stored["status"] == "Available"

    def test_writes_phone_index_without_plus(self, store):
        resolve_or_create_identity(store, "u1", "+44 7700 900123")
        assert store.get("phone-to-users/447700900123") == "u1"

    def test_uses_given_display_name(self, store):
        identity = resolve_or_create_identity(store, "u1", "+447700900123", "Alice")
        assert identity.display_name == "Alice"

    def test_existing_record_only_touches_last_seen(self, store, clock):
        resolve_or_create_identity(store, "u1", "+447700900123", "Alice")
        store.update("users/u1", {"status": "Away"})
        clock.advance(60_000)
        writes_before = len(store.writes)

        identity = resolve_or_create_identity(store, "u1", "+15550109999", "Other")

        assert identity.display_name == "Alice"
        assert identity.phone_number == "+447700900123"
        assert identity.status == UserStatus.AWAY
        assert store.get("users/u1/lastSeen") == clock.now
        assert store.writes[writes_before:] == [("users/u1/lastSeen", clock.now)]

    def test_index_failure_keeps_identity(self, store):
        store.fail_writes_under("phone-to-users")
        identity = resolve_or_create_identity(store, "u1", "+447700900123")
        assert identity.id == "u1"
        assert store.get("users/u1") is not None
        store.clear_failures()
        assert store.get("phone-to-users/447700900123") is None

    def test_identity_write_failure_skips_index(self, store):
        store.fail_writes_under("users/u1")
        resolve_or_create_identity(store, "u1", "+447700900123")
        store.clear_failures()
        assert store.get("users/u1") is None
        assert store.get("phone-to-users/447700900123") is None

    def test_read_failure_raises_lookup_failed(self, store):
        store.fail_reads_under("users/u1")
        with pytest.raises(LookupFailedError):
            resolve_or_create_identity(store, "u1", "+447700900123")


class TestPhoneNumberIsRegistered:
    def test_registered_number(self, store):
        add_user(store, "u1", "+447700900123")
        assert phone_number_is_registered(store, "+44 7700 900123")

    def test_unknown_number(self, store):
        assert not phone_number_is_registered(store, "+447700900999")

    def test_lookup_error_fails_open(self, store):
        add_user(store, "u1", "+447700900123")
        store.fail_reads_under("phone-to-users")
        assert phone_number_is_registered(store, "+447700900123") is False

    def test_no_digits(self, store):
        assert not phone_number_is_registered(store, "unknown")


class TestRegistrationPhoneNumber:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+44 7700 900123", "+447700900123"),
            ("7700900123", "+447700900123"),
            ("15550109999", "+15550109999"),
        ],
    )
    def test_canonical_form(self, raw, expected):
        assert registration_phone_number(raw) == expected

    @pytest.mark.parametrize("raw", ["", "123", "+44 77"])
    def test_too_short_rejected(self, raw):
        with pytest.raises(InvalidRequestError):
            registration_phone_number(raw)


class TestGetIdentity:
    def test_missing_user(self, store):
        assert get_identity(store, "ghost") is None

    @pytest.mark.parametrize("backend", ["store", "sql_store"])
    def test_created_identity_reads_back(self, request, backend):
        tree = request.getfixturevalue(backend)
        created = resolve_or_create_identity(tree, "u1", "+447700900123", "Alice")

        loaded = get_identity(tree, "u1")

        assert loaded.display_name == created.display_name == "Alice"
        assert loaded.phone_number == "+447700900123"
        assert loaded.last_seen_at == created.last_seen_at
        assert loaded.settings == {}

    def test_null_settings_read_as_empty(self):
        identity = UserIdentity.from_tree("u1", {"username": "Ann", "settings": None})
        assert identity.settings == {}

    def test_malformed_record_raises_lookup_failed(self, store):
        store.set("users/u1", {"uid": "u1", "lastSeen": "yesterday"})
        with pytest.raises(LookupFailedError):
            get_identity(store, "u1")

    def test_unknown_status_reads_as_available(self, store):
        store.set("users/u1", {"uid": "u1", "status": "Busy"})
        assert get_identity(store, "u1").status == UserStatus.AVAILABLE


class TestUpdateProfile:
    def test_updates_name_status_and_image(self, store):
        add_user(store, "u1", "+447700900123", "Alice")
        update_profile(store, "u1", "  Alicia ", "Away", "https://cdn.test/a.jpg")
        identity = get_identity(store, "u1")
        assert identity.display_name == "Alicia"
        assert identity.status == UserStatus.AWAY
        assert identity.profile_image_ref == "https://cdn.test/a.jpg"
        assert identity.phone_number == "+447700900123"

    def test_keeps_image_when_not_given(self, store):
        add_user(store, "u1", "+447700900123", "Alice")
        update_profile(store, "u1", "Alice", UserStatus.ONLINE)
        assert get_identity(store, "u1").profile_image_ref == DEFAULT_PROFILE_IMAGE

    def test_empty_name_rejected(self, store):
        with pytest.raises(InvalidRequestError):
            update_profile(store, "u1", "   ", "Available")

    def test_unknown_status_rejected(self, store):
        with pytest.raises(InvalidRequestError):
            update_profile(store, "u1", "Alice", "Busy")

    def test_write_failure_raises(self, store):
        store.fail_writes_under("users/u1")
        with pytest.raises(WriteFailedError):
            update_profile(store, "u1", "Alice", "Available")


class TestUpdatePushToken:
    def test_persists_token(self, store):
        add_user(store, "u1", "+447700900123")
        assert update_push_token(store, "u1", "token-1")
        assert store.get("users/u1/fcmToken") == "token-1"

    def test_failure_is_reported_not_raised(self, store):
        store.fail_writes_under("users/u1")
        assert update_push_token(store, "u1", "token-1") is False


class TestDirectoryListing:
    def test_lists_sorted_and_excludes_self(self, store):
        add_user(store, "u1", "+447700900001", "carol")
        add_user(store, "u2", "+447700900002", "Alice")
        add_user(store, "u3", "+447700900003", "bob")
        names = [i.display_name for i in list_directory(store, exclude_user_id="u1")]
        assert names == ["Alice", "bob"]

    def test_read_failure_raises(self, store):
        store.fail_reads_under("users")
        with pytest.raises(LookupFailedError):
            list_directory(store)

    def test_search_is_case_insensitive(self, store):
        add_user(store, "u1", "+447700900001", "Alice")
        add_user(store, "u2", "+447700900002", "Malik")
        identities = list_directory(store)
        assert [i.id for i in search_directory(identities, "LI")] == ["u1", "u2"]
        assert [i.id for i in search_directory(identities, "mal")] == ["u2"]
        assert len(search_directory(identities, "  ")) == 2


class TestDeleteAccount:
    @pytest.fixture
    def populated(self, store, storage):
        add_user(store, "u1", "+447700900123", "Alice")
        add_user(store, "u2", "+447700900456", "Bob")
        add_summary(store, "u1", "c1", ["u1", "u2"], "yo", 200)
        add_summary(store, "u2", "c1", ["u1", "u2"], "yo", 200, unread_count=1)
        store.set("messages/c1/m1", {"id": "m1", "senderId": "u1", "text": "hi"})
        store.set("messages/c1/m2", {"id": "m2", "senderId": "u2", "text": "yo"})
        storage.put_object(paths.profile_image_path("u1"), b"jpeg")
        return store

    def test_removes_own_data_only(self, populated, storage):
        report = delete_account(populated, "u1", storage)

        assert report.complete
        assert report.conversations_removed == 1
        assert report.messages_redacted == 1
        assert populated.get("users/u1") is None
        assert populated.get("phone-to-users/447700900123") is None
        assert populated.get("user-chats/u1") is None
        assert populated.get("user-chats/u2/c1") is not None
        assert list(populated.get("messages/c1")) == ["m2"]
        assert populated.get("users/u2") is not None
        assert storage.get_object(paths.profile_image_path("u1")) is None

    def test_keeps_index_entry_owned_by_someone_else(self, populated, storage):
        populated.set("phone-to-users/447700900123", "u9")
        delete_account(populated, "u1", storage)
        assert populated.get("phone-to-users/447700900123") == "u9"

    def test_user_record_failure_raises(self, populated):
        populated.fail_writes_under("users/u1")
        with pytest.raises(WriteFailedError):
            delete_account(populated, "u1")
        populated.clear_failures()
        assert populated.get("user-chats/u1/c1") is not None

    def test_later_failures_are_reported(self, populated):
        populated.fail_writes_under("messages/c1/m1")
        report = delete_account(populated, "u1")
        assert not report.complete
        assert report.failed_paths == ["messages/c1/m1"]
        assert populated.get("user-chats/u1") is None
