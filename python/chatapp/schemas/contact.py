"""Device contact and matched contact schemas.

DeviceContact never leaves the device. MatchedContact is computed per
matching request and is not cached.
"""

from pydantic import BaseModel

from chatapp.schemas.identity import DEFAULT_PROFILE_IMAGE, UserStatus


class DeviceContact(BaseModel):
    local_id: str
    display_name: str
    raw_phone_number: str


class MatchedContact(BaseModel):
    """A device contact joined with the directory user it resolved to."""

    id: str
    name: str
    phone_number: str
    username: str
    profile_image_ref: str = DEFAULT_PROFILE_IMAGE
    status: UserStatus = UserStatus.AVAILABLE
