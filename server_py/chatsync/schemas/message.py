from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import Field, TypeAdapter

from chatsync.schemas.base import StoreModel

DELETED_PLACEHOLDER = "This message was deleted"


class MessageBase(StoreModel):
    id: Optional[str] = None
    chat_id: Optional[str] = None
    sender: str
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None
    client_id: Optional[str] = None
    reply_to: Optional[str] = None
    deleted: bool = False
    deleted_at: Optional[int] = None
    deleted_by: Optional[str] = None
    edited: bool = False
    edited_at: Optional[int] = None
    read_by: Dict[str, int] = Field(default_factory=dict)
    reactions: Dict[str, str] = Field(default_factory=dict)

    @property
    def body(self) -> str:
        """Text used for previews, matching and search."""
        return getattr(self, "content", None) or ""

    def visible_body(self, viewer: Optional[str]) -> str:
        if self.deleted and viewer != self.sender:
            return DELETED_PLACEHOLDER
        return self.body

    def is_read_by(self, uid: str) -> bool:
        return uid in self.read_by

    def reaction_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for emoji in self.reactions.values():
            counts[emoji] = counts.get(emoji, 0) + 1
        return counts

    def to_record(self) -> Dict[str, Any]:
        """Store record; id and chat id are implied by the path."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"id", "chat_id"})


class TextMessage(MessageBase):
    type: Literal["text"] = "text"
    content: str


class AnnouncementMessage(MessageBase):
    type: Literal["announcement"] = "announcement"
    content: str


class SystemMessage(MessageBase):
    type: Literal["system"] = "system"
    content: str


class FileMessage(MessageBase):
    type: Literal["file"] = "file"
    file_name: str
    file_size: int
    file_type: str
    file_category: str = "file"
    file_data: Optional[str] = None
    content: Optional[str] = None

    @property
    def body(self) -> str:
        return self.content or self.file_name


class VoiceMessage(MessageBase):
    type: Literal["voice"] = "voice"
    audio_data: Optional[str] = None
    duration: float = 0.0
    mime_type: Optional[str] = None

    @property
    def body(self) -> str:
        seconds = int(round(self.duration))
        return f"Voice message ({seconds // 60}:{seconds % 60:02d})"


class PollOption(StoreModel):
    text: str
    votes: Dict[str, bool] = Field(default_factory=dict)

    @property
    def vote_count(self) -> int:
        return sum(1 for flag in self.votes.values() if flag)


class PollMessage(MessageBase):
    type: Literal["poll"] = "poll"
    question: str
    options: Dict[str, PollOption] = Field(default_factory=dict)

    @property
    def body(self) -> str:
        return self.question

    def ordered_options(self) -> List[Tuple[str, PollOption]]:
        # option ids are push keys, so key order is creation order
        return sorted(self.options.items())

    def voted_option(self, uid: str) -> Optional[str]:
        for option_id, option in self.ordered_options():
            if option.votes.get(uid):
                return option_id
        return None

    @property
    def total_votes(self) -> int:
        return sum(option.vote_count for option in self.options.values())


Message = Annotated[
    Union[TextMessage, AnnouncementMessage, SystemMessage, FileMessage, VoiceMessage, PollMessage],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(Message)


def parse_message(message_id: Optional[str], data: Dict[str, Any], chat_id: Optional[str] = None) -> MessageBase:
    payload = dict(data)
    # legacy records carry no type and are plain text
    payload.setdefault("type", "text")
    if message_id is not None:
        payload["id"] = message_id
    if chat_id is not None:
        payload["chatId"] = chat_id
    return _message_adapter.validate_python(payload)


def unread_kind(message: MessageBase) -> str:
    if isinstance(message, AnnouncementMessage):
        return "announcements"
    if isinstance(message, PollMessage):
        return "polls"
    return "messages"


def file_category(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "image"
    if mime_type == "application/pdf":
        return "pdf"
    if "word" in mime_type:
        return "document"
    if "excel" in mime_type or "sheet" in mime_type:
        return "spreadsheet"
    if mime_type == "text/plain":
        return "text"
    return "file"
