"""Write side of chats and messages.

Every operation that touches more than one node goes out as a single
multi-path update, so readers never observe half of it.
"""
from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional, Union

from chatsync.core.config import settings
from chatsync.core.errors import (
    EditWindowExpired,
    LastAdminError,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from chatsync.schemas.chat import GroupChat, Member, MemberRole, PrivateChat, parse_chat, private_chat_id
from chatsync.schemas.log import LogEntry
from chatsync.schemas.message import (
    DELETED_PLACEHOLDER,
    AnnouncementMessage,
    FileMessage,
    MessageBase,
    PollMessage,
    SystemMessage,
    TextMessage,
    VoiceMessage,
    parse_message,
)
from chatsync.store.base import SERVER_TIMESTAMP, Query, RemoteStore, increment
from chatsync.store.paths import (
    chat_path,
    join,
    logs_path,
    message_path,
    messages_path,
    user_chat_path,
    user_chats_path,
    user_path,
)

logger = logging.getLogger(__name__)

AnyChat = Union[PrivateChat, GroupChat]


def message_preview(message: MessageBase) -> str:
    if isinstance(message, FileMessage):
        return f"{message.sender_name or 'User'} sent a file: {message.file_name}"
    if isinstance(message, VoiceMessage):
        return "Voice message"
    if isinstance(message, PollMessage):
        return f"Poll: {message.question}"
    return message.body


def validate_outgoing(message: MessageBase) -> None:
    """Raises ValidationFailed for anything that must not reach the store."""
    if isinstance(message, (TextMessage, AnnouncementMessage, SystemMessage)):
        if not message.content.strip():
            raise ValidationFailed("Message cannot be empty")
    elif isinstance(message, FileMessage):
        if message.file_size <= 0:
            raise ValidationFailed("File is empty")
        if message.file_size > settings.FILE_SIZE_LIMIT:
            limit_mb = settings.FILE_SIZE_LIMIT // (1024 * 1024)
            raise ValidationFailed(f"File size must be less than {limit_mb}MB")
        if message.file_type not in settings.ALLOWED_FILE_TYPES:
            raise ValidationFailed(f"File type {message.file_type} is not allowed")
    elif isinstance(message, VoiceMessage):
        if not message.audio_data or message.duration <= 0:
            raise ValidationFailed("Voice message is empty")
    elif isinstance(message, PollMessage):
        if not message.question.strip():
            raise ValidationFailed("Poll question cannot be empty")
        texts = [option.text.strip() for option in message.options.values()]
        if len(texts) < 2 or not all(texts):
            raise ValidationFailed("A poll needs at least two non-empty options")
        if len(set(texts)) != len(texts):
            raise ValidationFailed("Poll options must be unique")


class ChatService:
    def __init__(self, store: RemoteStore, edit_window_minutes: Optional[int] = None) -> None:
        self.store = store
        minutes = settings.EDIT_WINDOW_MINUTES if edit_window_minutes is None else edit_window_minutes
        self.edit_window_ms = minutes * 60 * 1000

    # Reads

    async def get_chat(self, chat_id: str) -> AnyChat:
        data = await self.store.get(chat_path(chat_id))
        if not data:
            raise NotFound(f"Chat {chat_id} not found", path=chat_path(chat_id))
        return parse_chat(chat_id, data)

    async def get_group(self, chat_id: str) -> GroupChat:
        chat = await self.get_chat(chat_id)
        if not isinstance(chat, GroupChat):
            raise ValidationFailed("Not a group chat")
        return chat

    async def get_message(self, chat_id: str, message_id: str) -> MessageBase:
        data = await self.store.get(message_path(chat_id, message_id))
        if not data:
            raise NotFound("Message not found", path=message_path(chat_id, message_id))
        return parse_message(message_id, data, chat_id)

    async def user_chat_ids(self, uid: str) -> List[str]:
        return sorted(await self.store.get(user_chats_path(uid)) or {})

    async def fetch_logs(self, chat_id: str, kind: Optional[str] = None) -> List[LogEntry]:
        """Edit/delete history, newest first."""
        rows = await self.store.query(Query(path=logs_path(chat_id), order_by="timestamp"))
        entries = [LogEntry.model_validate({**value, "id": key}) for key, value in rows if isinstance(value, dict)]
        if kind is not None:
            entries = [entry for entry in entries if entry.type == kind]
        entries.reverse()
        return entries

    # Messages

    async def send_message(self, chat_id: str, message: MessageBase) -> str:
        validate_outgoing(message)
        chat = await self.get_chat(chat_id)
        await self._check_can_post(chat, message.sender)

        message_id = self.store.push_key()
        record = message.to_record()
        record["timestamp"] = SERVER_TIMESTAMP
        await self.store.update("", {
            message_path(chat_id, message_id): record,
            join(chat_path(chat_id), "lastMessage"): {
                "messageId": message_id,
                "content": message_preview(message),
                "sender": message.sender,
                "senderName": message.sender_name,
                "timestamp": SERVER_TIMESTAMP,
            },
            join(user_chat_path(message.sender, chat_id), "lastRead"): SERVER_TIMESTAMP,
        })
        logger.debug("Sent %s message %s to %s", getattr(message, "type", "text"), message_id, chat_id)
        return message_id

    async def _check_can_post(self, chat: AnyChat, sender: str) -> None:
        if isinstance(chat, PrivateChat):
            other = chat.other_participant(sender)
            if sender not in chat.member_ids or other is None:
                raise PermissionDenied("You are not part of this chat")
            blocked = await self.store.get(join(user_path(other), "blocked", sender))
            if blocked:
                raise PermissionDenied("You can't send messages to this user")
        elif sender not in chat.members:
            raise PermissionDenied("You are not a member of this group")

    async def edit_message(
        self,
        chat_id: str,
        message_id: str,
        editor: str,
        new_content: str,
        editor_name: Optional[str] = None,
    ) -> None:
        if not new_content.strip():
            raise ValidationFailed("Message cannot be empty")
        message = await self.get_message(chat_id, message_id)
        if message.sender != editor:
            raise PermissionDenied("You can only edit your own messages")
        if message.deleted:
            raise ValidationFailed("Deleted messages cannot be edited")
        if not isinstance(message, (TextMessage, AnnouncementMessage)):
            raise ValidationFailed("Only text messages can be edited")
        if message.timestamp is not None and self.store.now() - message.timestamp > self.edit_window_ms:
            raise EditWindowExpired(f"Messages can only be edited within {self.edit_window_ms // 60000} minutes")
        if new_content == message.content:
            return

        path = message_path(chat_id, message_id)
        updates: Dict[str, Any] = {
            join(path, "content"): new_content,
            join(path, "edited"): True,
            join(path, "editedAt"): SERVER_TIMESTAMP,
        }
        updates.update(self._log_write(chat_id, LogEntry(
            type="edit",
            message_id=message_id,
            actor=editor,
            actor_name=editor_name,
            original_content=message.content,
            new_content=new_content,
        )))
        if await self._is_last_message(chat_id, message_id):
            updates[join(chat_path(chat_id), "lastMessage", "content")] = new_content
        await self.store.update("", updates)

    async def delete_message(
        self,
        chat_id: str,
        message_id: str,
        actor: str,
        actor_name: Optional[str] = None,
    ) -> None:
        message = await self.get_message(chat_id, message_id)
        if message.deleted:
            return
        if message.sender != actor:
            chat = await self.get_chat(chat_id)
            if not (isinstance(chat, GroupChat) and chat.is_admin(actor)):
                raise PermissionDenied("You can only delete your own messages")

        path = message_path(chat_id, message_id)
        updates: Dict[str, Any] = {
            join(path, "deleted"): True,
            join(path, "deletedAt"): SERVER_TIMESTAMP,
            join(path, "deletedBy"): actor,
        }
        updates.update(self._log_write(chat_id, LogEntry(
            type="delete",
            message_id=message_id,
            actor=actor,
            actor_name=actor_name,
            original_content=message.body,
        )))
        if await self._is_last_message(chat_id, message_id):
            updates[join(chat_path(chat_id), "lastMessage", "content")] = DELETED_PLACEHOLDER
        await self.store.update("", updates)

    def _log_write(self, chat_id: str, entry: LogEntry) -> Dict[str, Any]:
        record = entry.to_store()
        record["timestamp"] = SERVER_TIMESTAMP
        return {join(logs_path(chat_id), self.store.push_key()): record}

    async def _is_last_message(self, chat_id: str, message_id: str) -> bool:
        return await self.store.get(join(chat_path(chat_id), "lastMessage", "messageId")) == message_id

    async def toggle_reaction(self, chat_id: str, message_id: str, uid: str, emoji: str) -> Optional[str]:
        """Sets ``emoji`` as the user's reaction, or clears it when already set."""
        if not emoji:
            raise ValidationFailed("Reaction cannot be empty")
        message = await self.get_message(chat_id, message_id)
        if message.deleted:
            raise ValidationFailed("Cannot react to a deleted message")
        value = None if message.reactions.get(uid) == emoji else emoji
        await self.store.set(join(message_path(chat_id, message_id), "reactions", uid), value)
        return value

    async def mark_messages_read(self, chat_id: str, uid: str, message_ids: Iterable[str]) -> int:
        updates = {join(message_id, "readBy", uid): SERVER_TIMESTAMP for message_id in message_ids}
        if updates:
            await self.store.update(messages_path(chat_id), updates)
        return len(updates)

    # Chats

    async def create_private_chat(self, uid: str, other_uid: str) -> str:
        if uid == other_uid:
            raise ValidationFailed("Cannot start a chat with yourself")
        chat_id = private_chat_id(uid, other_uid)
        if await self.store.get(chat_path(chat_id)):
            return chat_id

        record = PrivateChat(participants={uid: True, other_uid: True}).to_store()
        record["createdAt"] = SERVER_TIMESTAMP
        entry = {"role": MemberRole.MEMBER.value, "joinedAt": SERVER_TIMESTAMP}
        await self.store.update("", {
            chat_path(chat_id): record,
            user_chat_path(uid, chat_id): entry,
            user_chat_path(other_uid, chat_id): dict(entry),
        })
        logger.info("Created private chat %s", chat_id)
        return chat_id

    async def create_group(
        self,
        creator: str,
        name: str,
        member_ids: Iterable[str] = (),
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        if not name.strip():
            raise ValidationFailed("Group name is required")
        chat_id = self.store.push_key()
        now = self.store.now()
        members = {creator: Member(role=MemberRole.ADMIN, joined_at=now, added_by=creator)}
        for uid in member_ids:
            if uid not in members:
                members[uid] = Member(role=MemberRole.MEMBER, joined_at=now, added_by=creator)

        group = GroupChat(
            name=name.strip(),
            icon=icon,
            description=description,
            created_by=creator,
            created_at=now,
            admins={creator: True},
            members=members,
            member_count=len(members),
        )
        record = group.to_store()
        record["lastMessage"] = {"content": "Group created", "timestamp": now}
        updates: Dict[str, Any] = {chat_path(chat_id): record}
        for uid, member in members.items():
            updates[user_chat_path(uid, chat_id)] = {"role": member.role.value, "joinedAt": now}
        await self.store.update("", updates)
        logger.info("Created group %s with %d members", chat_id, len(members))
        return chat_id

    async def _require_admin(self, chat_id: str, actor: str) -> GroupChat:
        group = await self.get_group(chat_id)
        if not group.is_admin(actor):
            raise PermissionDenied("Only admins can do this")
        return group

    def _member_writes(self, chat_id: str, uid: str, added_by: str) -> Dict[str, Any]:
        now = self.store.now()
        path = chat_path(chat_id)
        return {
            join(path, "members", uid): Member(joined_at=now, added_by=added_by).to_store(),
            join(path, "memberCount"): increment(1),
            user_chat_path(uid, chat_id): {"role": MemberRole.MEMBER.value, "joinedAt": now},
        }

    async def add_member(self, chat_id: str, actor: str, uid: str) -> bool:
        group = await self._require_admin(chat_id, actor)
        if uid in group.members:
            return False
        await self.store.update("", self._member_writes(chat_id, uid, actor))
        return True

    async def remove_member(self, chat_id: str, actor: str, uid: str) -> None:
        group = await self.get_group(chat_id)
        if actor != uid and not group.is_admin(actor):
            raise PermissionDenied("Only admins can remove members")
        if uid not in group.members:
            raise NotFound(f"{uid} is not a member of this group")
        if group.admin_ids == [uid] and len(group.members) > 1:
            raise LastAdminError("Make someone else an admin first")

        path = chat_path(chat_id)
        updates: Dict[str, Any] = {
            join(path, "members", uid): None,
            join(path, "memberCount"): increment(-1),
            user_chat_path(uid, chat_id): None,
        }
        if group.is_admin(uid):
            updates[join(path, "admins", uid)] = None
        await self.store.update("", updates)

    async def leave_group(self, chat_id: str, uid: str) -> None:
        await self.remove_member(chat_id, uid, uid)

    async def set_admin(self, chat_id: str, actor: str, uid: str, is_admin: bool) -> None:
        group = await self._require_admin(chat_id, actor)
        if uid not in group.members:
            raise NotFound(f"{uid} is not a member of this group")
        if not is_admin and group.admin_ids == [uid]:
            raise LastAdminError("A group needs at least one admin")

        role = MemberRole.ADMIN if is_admin else MemberRole.MEMBER
        path = chat_path(chat_id)
        await self.store.update("", {
            join(path, "admins", uid): True if is_admin else None,
            join(path, "members", uid, "role"): role.value,
            join(user_chat_path(uid, chat_id), "role"): role.value,
        })

    async def update_group_info(
        self,
        chat_id: str,
        actor: str,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._require_admin(chat_id, actor)
        updates: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ValidationFailed("Group name is required")
            updates["name"] = name.strip()
        if icon is not None:
            updates["icon"] = icon
        if description is not None:
            updates["description"] = description
        if updates:
            await self.store.update(chat_path(chat_id), updates)

    async def generate_invite_link(self, chat_id: str, actor: str) -> str:
        await self._require_admin(chat_id, actor)
        link = secrets.token_urlsafe(8)
        await self.store.set(join(chat_path(chat_id), "inviteLink"), link)
        return link

    async def join_with_invite(self, chat_id: str, uid: str, link: str) -> bool:
        group = await self.get_group(chat_id)
        if not group.invite_link or not secrets.compare_digest(group.invite_link, link):
            raise PermissionDenied("Invalid or expired invite link")
        if uid in group.members:
            return False
        await self.store.update("", self._member_writes(chat_id, uid, group.created_by))
        return True
