"""Pydantic schemas for the records stored in the tree.

All schemas are re-exported here for convenient imports.
"""

from chatapp.schemas.contact import DeviceContact, MatchedContact
from chatapp.schemas.conversation import Conversation, ConversationSummary
from chatapp.schemas.identity import (
    DEFAULT_PROFILE_IMAGE,
    PhoneIndexEntry,
    UserIdentity,
    UserStatus,
)
from chatapp.schemas.message import (
    IMAGE_PREVIEW_TEXT,
    ImagePayload,
    Message,
    MessageBody,
    TextPayload,
)

__all__ = [
    # Identity
    "DEFAULT_PROFILE_IMAGE",
    "PhoneIndexEntry",
    "UserIdentity",
    "UserStatus",
    # Conversations
    "Conversation",
    "ConversationSummary",
    # Messages
    "IMAGE_PREVIEW_TEXT",
    "ImagePayload",
    "Message",
    "MessageBody",
    "TextPayload",
    # Contacts
    "DeviceContact",
    "MatchedContact",
]
