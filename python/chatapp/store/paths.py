"""Tree and blob path building utilities.

This module is the single point of logic for building the key paths the
core reads and writes. All path construction goes through these helpers.

Tree layout:
    users/{user_id}                         UserIdentity
    phone-to-users/{phone_without_plus}     PhoneIndexEntry (value: user id)
    user-chats/{user_id}/{conversation_id}  ConversationSummary (one per participant)
    messages/{conversation_id}/{message_id} Message

Blob layout:
    chat_images/{conversation_id}/{file_name}
    profile_images/{user_id}/{file_name}
"""

from chatapp.store.base import join_path

USERS_ROOT = "users"
PHONE_INDEX_ROOT = "phone-to-users"
USER_CHATS_ROOT = "user-chats"
MESSAGES_ROOT = "messages"

CHAT_IMAGES_ROOT = "chat_images"
PROFILE_IMAGES_ROOT = "profile_images"


def user_path(user_id: str) -> str:
    return join_path(USERS_ROOT, user_id)


def user_field_path(user_id: str, field: str) -> str:
    return join_path(USERS_ROOT, user_id, field)


def phone_index_path(phone_key: str) -> str:
    """Path of the phone index entry for an already-keyed phone number."""
    return join_path(PHONE_INDEX_ROOT, phone_key)


def user_chats_path(user_id: str) -> str:
    return join_path(USER_CHATS_ROOT, user_id)


def summary_path(user_id: str, conversation_id: str) -> str:
    return join_path(USER_CHATS_ROOT, user_id, conversation_id)


def summary_field_path(user_id: str, conversation_id: str, field: str) -> str:
    return join_path(USER_CHATS_ROOT, user_id, conversation_id, field)


def messages_path(conversation_id: str) -> str:
    return join_path(MESSAGES_ROOT, conversation_id)


def message_path(conversation_id: str, message_id: str) -> str:
    return join_path(MESSAGES_ROOT, conversation_id, message_id)


def chat_image_prefix(conversation_id: str) -> str:
    return join_path(CHAT_IMAGES_ROOT, conversation_id)


def profile_image_prefix(user_id: str) -> str:
    return join_path(PROFILE_IMAGES_ROOT, user_id)


PROFILE_IMAGE_NAME = "avatar"


def profile_image_path(user_id: str) -> str:
    """Fixed object path of a user's profile image, so it can be deleted by id."""
    return join_path(PROFILE_IMAGES_ROOT, user_id, PROFILE_IMAGE_NAME)
