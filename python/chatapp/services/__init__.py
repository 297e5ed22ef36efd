"""Chat core services.

Each module owns one component and is called by the client facade
(chatapp.client) or directly by tests.
"""

from chatapp.services.chat_list import ChatListReconciler
from chatapp.services.conversations import (
    ResolutionState,
    conversation_id_for,
    reconcile_summaries,
    resolve_or_create_conversation,
)
from chatapp.services.directory import phone_number_is_registered, resolve_or_create_identity
from chatapp.services.matching import ContactMatcher, MatchStage
from chatapp.services.messages import MessageStore, sort_messages
from chatapp.services.presence import PresenceState, PresenceTracker

__all__ = [
    "ChatListReconciler",
    "ContactMatcher",
    "MatchStage",
    "MessageStore",
    "PresenceState",
    "PresenceTracker",
    "ResolutionState",
    "conversation_id_for",
    "phone_number_is_registered",
    "reconcile_summaries",
    "resolve_or_create_conversation",
    "resolve_or_create_identity",
    "sort_messages",
]
