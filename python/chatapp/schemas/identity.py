"""User identity and phone index schemas.

Field aliases match the keys stored under users/{uid} so records can be
validated straight from tree snapshots and dumped back with by_alias=True.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Marker stored in profileImageUrl until the user uploads a picture
DEFAULT_PROFILE_IMAGE = "default"


class UserStatus(str, Enum):
    """Presence / availability states shown next to a user."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    AVAILABLE = "Available"
    AWAY = "Away"


class UserIdentity(BaseModel):
    """A registered user as stored in the directory.

    `id` is assigned by the identity provider and never changes.
    `phone_number` is authoritative; the phone index is only a lookup aid.
    """

    id: str = Field(alias="uid")
    phone_number: str = Field(default="", alias="phoneNumber")
    display_name: str = Field(default="", alias="username")
    profile_image_ref: str = Field(default=DEFAULT_PROFILE_IMAGE, alias="profileImageUrl")
    status: UserStatus = UserStatus.AVAILABLE
    last_seen_at: int = Field(default=0, alias="lastSeen")
    fcm_token: str | None = Field(default=None, alias="fcmToken")
    settings: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("status", mode="before")
    @classmethod
    def coerce_unknown_status(cls, value: Any) -> Any:
        """Unknown stored statuses read back as Available."""
        if isinstance(value, UserStatus):
            return value
        try:
            return UserStatus(value)
        except ValueError:
            return UserStatus.AVAILABLE

    @field_validator("settings", mode="before")
    @classmethod
    def coerce_missing_settings(cls, value: Any) -> Any:
        return {} if value is None else value

    @classmethod
    def from_tree(cls, user_id: str, value: dict[str, Any]) -> "UserIdentity":
        """Build from the dict stored at users/{user_id}."""
        data = dict(value)
        data.setdefault("uid", user_id)
        return cls.model_validate(data)

    def to_tree(self) -> dict[str, Any]:
        """Dump to the dict stored at users/{id}."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")



class PhoneIndexEntry(BaseModel):
    """phone-to-users/{normalized_phone} -> user id.

    normalized_phone is the normalized number with "+" stripped. The entry is
    a lookup aid only; UserIdentity.phone_number is authoritative.
    """

    normalized_phone: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
