from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, model_validator

from chatsync.schemas.base import StoreModel


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class LastMessage(StoreModel):
    message_id: Optional[str] = None
    content: str = ""
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None


class Member(StoreModel):
    role: MemberRole = MemberRole.MEMBER
    joined_at: Optional[int] = None
    added_by: Optional[str] = None


class PrivateChat(StoreModel):
    id: Optional[str] = None
    type: Literal["private"] = "private"
    participants: Dict[str, bool]
    created_at: Optional[int] = None
    last_message: Optional[LastMessage] = None

    @model_validator(mode="after")
    def two_participants(self) -> "PrivateChat":
        if len([uid for uid, flag in self.participants.items() if flag]) != 2:
            raise ValueError("a private chat has exactly two participants")
        return self

    @property
    def member_ids(self) -> List[str]:
        return sorted(uid for uid, flag in self.participants.items() if flag)

    def other_participant(self, uid: str) -> Optional[str]:
        others = [member for member in self.member_ids if member != uid]
        return others[0] if others else None


class GroupChat(StoreModel):
    id: Optional[str] = None
    type: Literal["group"] = "group"
    name: str
    icon: Optional[str] = None
    description: Optional[str] = None
    created_by: str
    created_at: Optional[int] = None
    admins: Dict[str, bool] = Field(default_factory=dict)
    members: Dict[str, Member] = Field(default_factory=dict)
    member_count: int = 0
    invite_link: Optional[str] = None
    last_message: Optional[LastMessage] = None

    @property
    def member_ids(self) -> List[str]:
        return sorted(self.members)

    @property
    def admin_ids(self) -> List[str]:
        return sorted(uid for uid, flag in self.admins.items() if flag)

    def is_admin(self, uid: str) -> bool:
        return bool(self.admins.get(uid))


Chat = Annotated[Union[PrivateChat, GroupChat], Field(discriminator="type")]

_chat_adapter = TypeAdapter(Chat)


def parse_chat(chat_id: str, data: Dict[str, Any]) -> Union[PrivateChat, GroupChat]:
    payload = dict(data)
    payload["id"] = chat_id
    return _chat_adapter.validate_python(payload)


def private_chat_id(uid_a: str, uid_b: str) -> str:
    return "_".join(sorted((uid_a, uid_b)))


class UserChatEntry(StoreModel):
    """Per-user chat index row with unread counters."""

    role: MemberRole = MemberRole.MEMBER
    joined_at: Optional[int] = None
    last_read: int = 0
    unread_messages: int = 0
    unread_announcements: int = 0
    unread_polls: int = 0
