"""Conversation and per-participant summary schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Conversation(BaseModel):
    """A one-to-one conversation between exactly two distinct users."""

    conversation_id: str
    participant_ids: tuple[str, str]

    @field_validator("participant_ids")
    @classmethod
    def distinct_participants(cls, value: tuple[str, str]) -> tuple[str, str]:
        if value[0] == value[1]:
            raise ValueError("A conversation needs two distinct participants")
        return value


class ConversationSummary(BaseModel):
    """Denormalized view of a conversation stored under each participant.

    Both copies agree on conversation_id and participant_ids; unread_count is
    per side and counts messages sent by the other participant.
    """

    conversation_id: str = Field(default="", alias="chatId")
    participant_ids: list[str] = Field(default_factory=list, alias="participants")
    last_message_text: str = Field(default="", alias="lastMessage")
    last_message_at: int = Field(default=0, alias="lastMessageTime")
    unread_count: int = Field(default=0, ge=0, alias="unreadCount")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("unread_count", mode="before")
    @classmethod
    def clamp_negative_unread(cls, value: Any) -> Any:
        if isinstance(value, int) and value < 0:
            return 0
        return value

    @classmethod
    def from_tree(cls, value: dict[str, Any]) -> "ConversationSummary":
        return cls.model_validate(value)

    def to_tree(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
