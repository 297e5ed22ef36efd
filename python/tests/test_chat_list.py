"""Tests for the local conversation list reconciler."""

import pytest

from chatapp.errors import InvalidRequestError, OperationInFlightError, StaleLocalStateError
from chatapp.schemas.conversation import ConversationSummary
from chatapp.services.chat_list import ChatListReconciler, DeleteOutcome


def summary(cid: str, at: int, text: str = "") -> ConversationSummary:
    return ConversationSummary(
        conversation_id=cid,
        participant_ids=["me", f"peer-{cid}"],
        last_message_text=text,
        last_message_at=at,
    )


def snapshot(*summaries: ConversationSummary) -> dict:
    return {s.conversation_id: s.to_tree() for s in summaries}


@pytest.fixture
def reconciler():
    reconciler = ChatListReconciler()
    reconciler.apply_snapshot(snapshot(summary("c2", 200), summary("c1", 300), summary("c3", 100)))
    return reconciler


class TestApplySnapshot:
    def test_sorted_newest_first(self, reconciler):
        assert reconciler.ids() == ["c1", "c2", "c3"]

    def test_snapshot_replaces_list(self, reconciler):
        reconciler.apply_snapshot(snapshot(summary("c4", 50)))
        assert reconciler.ids() == ["c4"]

    def test_empty_snapshot_clears_list(self, reconciler):
        reconciler.apply_snapshot(None)
        assert reconciler.items == []

    def test_entries_without_id_use_key(self):
        reconciler = ChatListReconciler()
        reconciler.apply_snapshot({"c9": {"lastMessage": "hi", "lastMessageTime": 5}})
        assert reconciler.ids() == ["c9"]


class TestDeleteAt:
    def test_successful_delete(self, reconciler):
        deleted = []
        outcome = reconciler.delete_at(1, deleted.append)

        assert outcome == DeleteOutcome(conversation_id="c2", index=1)
        assert deleted == ["c2"]
        assert reconciler.ids() == ["c1", "c3"]
        assert reconciler.swipe_enabled

    def test_failed_delete_restores_position(self, reconciler):
        def failing_delete(conversation_id):
            raise RuntimeError("offline")

        with pytest.raises(StaleLocalStateError):
            reconciler.delete_at(1, failing_delete)

        assert reconciler.ids() == ["c1", "c2", "c3"]
        assert not reconciler.delete_in_flight

    def test_out_of_range_index(self, reconciler):
        with pytest.raises(InvalidRequestError):
            reconciler.delete_at(3, lambda cid: None)
        with pytest.raises(InvalidRequestError):
            reconciler.delete_at(-1, lambda cid: None)
        assert reconciler.ids() == ["c1", "c2", "c3"]

    def test_second_delete_while_in_flight_rejected(self, reconciler):
        errors = []

        def reentrant_delete(conversation_id):
            assert not reconciler.swipe_enabled
            try:
                reconciler.delete_at(0, lambda cid: None)
            except OperationInFlightError as e:
                errors.append(e)

        reconciler.delete_at(1, reentrant_delete)

        assert len(errors) == 1
        assert reconciler.ids() == ["c1", "c3"]

    def test_stale_snapshot_cannot_resurrect_pending_entry(self, reconciler):
        def delete_with_stale_snapshot(conversation_id):
            # The live subscription still reports c2 and a new c4
            reconciler.apply_snapshot(
                snapshot(
                    summary("c1", 300),
                    summary("c2", 200),
                    summary("c3", 100),
                    summary("c4", 400),
                )
            )

        reconciler.delete_at(1, delete_with_stale_snapshot)

        assert reconciler.ids() == ["c4", "c1", "c3"]

    def test_in_flight_merge_keeps_existing_entries(self, reconciler):
        def delete_with_update(conversation_id):
            reconciler.apply_snapshot(snapshot(summary("c1", 999, "edited"), summary("c3", 100)))

        reconciler.delete_at(1, delete_with_update)

        assert reconciler.ids() == ["c1", "c3"]
        assert reconciler.items[0].last_message_at == 300


class TestRestore:
    def test_invalid_index_appends(self):
        reconciler = ChatListReconciler()
        reconciler.apply_snapshot(snapshot(summary("c1", 300), summary("c3", 100)))

        reconciler.restore(summary("c2", 200), 5)

        assert reconciler.ids() == ["c1", "c3", "c2"]

    def test_restore_at_index(self):
        reconciler = ChatListReconciler()
        reconciler.apply_snapshot(snapshot(summary("c1", 300), summary("c3", 100)))

        reconciler.restore(summary("c2", 200), 1)

        assert reconciler.ids() == ["c1", "c2", "c3"]

    def test_already_present_is_not_duplicated(self, reconciler):
        reconciler.restore(summary("c2", 200), 0)
        assert reconciler.ids() == ["c1", "c2", "c3"]

    def test_snapshot_during_failed_delete(self, reconciler):
        def snapshot_then_fail(conversation_id):
            reconciler.apply_snapshot(None)
            raise RuntimeError("offline")

        with pytest.raises(StaleLocalStateError):
            reconciler.delete_at(2, snapshot_then_fail)

        assert reconciler.ids() == ["c1", "c2", "c3"]


class TestFiltered:
    def test_filters_by_text_and_name(self, reconciler):
        reconciler.apply_snapshot(snapshot(summary("c1", 300, "lunch?"), summary("c2", 200)))
        names = {"peer-c2": "Bob"}
        assert [s.conversation_id for s in reconciler.filtered("LUNCH", names.get, "me")] == [
            "c1"
        ]
        assert [s.conversation_id for s in reconciler.filtered("bob", names.get, "me")] == [
            "c2"
        ]
