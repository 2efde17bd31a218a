from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from pydantic import Field, field_validator

from chatsync.core.config import settings
from chatsync.schemas.base import StoreModel


class UserStatus(str, Enum):
    AVAILABLE = "Available"
    AWAY = "Away"
    DO_NOT_DISTURB = "Do Not Disturb"
    IN_A_MEETING = "In a meeting"
    OFFLINE = "Offline"


class Presence(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


_PRESENCE_BY_STATUS = {
    UserStatus.AVAILABLE: Presence.ONLINE,
    UserStatus.AWAY: Presence.AWAY,
    UserStatus.DO_NOT_DISTURB: Presence.BUSY,
    UserStatus.IN_A_MEETING: Presence.BUSY,
    UserStatus.OFFLINE: Presence.OFFLINE,
}


def presence_for(status: UserStatus) -> Presence:
    return _PRESENCE_BY_STATUS[UserStatus(status)]


class UserProfile(StoreModel):
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    bio: str = ""
    status: UserStatus = UserStatus.AVAILABLE
    last_active_status: Optional[UserStatus] = None
    presence: Presence = Presence.OFFLINE
    online: bool = False
    last_seen: Optional[int] = None
    created_at: Optional[int] = None
    blocked: Dict[str, bool] = Field(default_factory=dict)

    @field_validator("bio")
    @classmethod
    def bio_length(cls, value: str) -> str:
        if len(value) > settings.BIO_MAX_LENGTH:
            raise ValueError(f"bio is limited to {settings.BIO_MAX_LENGTH} characters")
        return value

    @property
    def name(self) -> str:
        for value in (self.display_name, self.email, self.uid):
            if isinstance(value, str) and value.strip():
                return value.strip()
        return self.uid

    def has_blocked(self, uid: str) -> bool:
        return bool(self.blocked.get(uid))
