"""Message schemas.

Messages are stored flat, as the original clients wrote them:
{id, senderId, receiverId, text, imageUrl, type, timestamp, isRead}.
In memory the body is a discriminated union of text and image payloads.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# Summary preview text used for image messages
IMAGE_PREVIEW_TEXT = "📷 Image"


class TextPayload(BaseModel):
    kind: Literal["TEXT"] = "TEXT"
    text: str


class ImagePayload(BaseModel):
    kind: Literal["IMAGE"] = "IMAGE"
    image_url: str


MessageBody = Annotated[TextPayload | ImagePayload, Field(discriminator="kind")]


class Message(BaseModel):
    """An immutable chat message (only read_flag may change)."""

    id: str
    conversation_id: str
    sender_id: str
    recipient_id: str
    body: MessageBody
    sent_at: int
    read_flag: bool = False

    @property
    def preview_text(self) -> str:
        """Text shown as lastMessage in conversation summaries."""
        if isinstance(self.body, ImagePayload):
            return IMAGE_PREVIEW_TEXT
        return self.body.text

    @classmethod
    def from_tree(cls, conversation_id: str, message_id: str, value: dict[str, Any]) -> "Message":
        """Build from the flat dict stored at messages/{conversation_id}/{message_id}."""
        if value.get("type") == "IMAGE":
            body: TextPayload | ImagePayload = ImagePayload(image_url=value.get("imageUrl", ""))
        else:
            body = TextPayload(text=value.get("text", ""))
        return cls(
            id=value.get("id") or message_id,
            conversation_id=conversation_id,
            sender_id=value.get("senderId", ""),
            recipient_id=value.get("receiverId", ""),
            body=body,
            sent_at=int(value.get("timestamp", 0)),
            read_flag=bool(value.get("isRead", False)),
        )

    def to_tree(self) -> dict[str, Any]:
        """Dump to the flat stored form."""
        is_image = isinstance(self.body, ImagePayload)
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.recipient_id,
            "text": "" if is_image else self.body.text,
            "imageUrl": self.body.image_url if is_image else "",
            "type": self.body.kind,
            "timestamp": self.sent_at,
            "isRead": self.read_flag,
        }
