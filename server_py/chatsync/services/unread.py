from __future__ import annotations

import logging
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError

from chatsync.core.errors import ChatSyncError
from chatsync.schemas.chat import UserChatEntry
from chatsync.schemas.message import MessageBase, parse_message, unread_kind
from chatsync.services.notifications import Notifier
from chatsync.services.reconciler import messages_from_rows
from chatsync.store.base import SERVER_TIMESTAMP, Query, RemoteStore, StoreEvent, Subscription
from chatsync.store.paths import messages_path, user_chat_path

logger = logging.getLogger(__name__)


class UnreadCounters(BaseModel):
    messages: int = 0
    announcements: int = 0
    polls: int = 0

    @property
    def total(self) -> int:
        return self.messages + self.announcements + self.polls


class UnreadTracker:
    """Per-chat unread counters for the signed-in user."""

    def __init__(self, store: RemoteStore, uid: str, notifier: Optional[Notifier] = None) -> None:
        self.store = store
        self.uid = uid
        self.notifier = notifier
        self.focused: Optional[str] = None
        self._counters: Dict[str, UnreadCounters] = {}
        self._watches: Dict[str, Subscription] = {}

    def counters(self, chat_id: str) -> UnreadCounters:
        return self._counters.get(chat_id, UnreadCounters()).model_copy()

    def focus(self, chat_id: Optional[str]) -> None:
        self.focused = chat_id

    def counts_toward_unread(self, chat_id: str, message: MessageBase) -> bool:
        return message.sender != self.uid and not message.deleted and chat_id != self.focused

    def on_inbound(self, chat_id: str, message: MessageBase) -> bool:
        if not self.counts_toward_unread(chat_id, message):
            return False
        counters = self._counters.setdefault(chat_id, UnreadCounters())
        kind = unread_kind(message)
        setattr(counters, kind, getattr(counters, kind) + 1)
        return True

    async def mark_read(self, chat_id: str) -> bool:
        self._counters[chat_id] = UnreadCounters()
        try:
            await self.store.update(user_chat_path(self.uid, chat_id), {
                "lastRead": SERVER_TIMESTAMP,
                "unreadMessages": 0,
                "unreadAnnouncements": 0,
                "unreadPolls": 0,
            })
        except ChatSyncError as exc:
            logger.warning("Could not mark %s read: %s", chat_id, exc)
            if self.notifier is not None:
                self.notifier.report(exc, "mark the chat as read")
            return False
        return True

    async def hydrate(self, chat_id: str) -> UnreadCounters:
        """Recomputes counters from messages newer than ``lastRead``."""
        entry = UserChatEntry.model_validate(await self.store.get(user_chat_path(self.uid, chat_id)) or {})
        last_read = entry.last_read
        rows = await self.store.query(Query(path=messages_path(chat_id), order_by="timestamp", start_at=last_read + 1))
        counters = UnreadCounters()
        for message in messages_from_rows(rows, chat_id):
            if message.sender == self.uid or message.deleted:
                continue
            kind = unread_kind(message)
            setattr(counters, kind, getattr(counters, kind) + 1)
        self._counters[chat_id] = counters
        return counters.model_copy()

    async def watch(self, chat_id: str) -> None:
        """Counts messages that arrive from now on; ``hydrate`` covers earlier ones."""
        if chat_id in self._watches:
            return
        live = False

        def on_event(event: StoreEvent) -> None:
            if not live or event.kind != "child_added" or not isinstance(event.value, dict):
                return
            try:
                message = parse_message(event.key, event.value, chat_id)
            except ValidationError:
                logger.warning("Ignoring malformed message %s in %s", event.key, chat_id)
                return
            self.on_inbound(chat_id, message)

        query = Query(path=messages_path(chat_id), order_by="timestamp", start_at=self.store.now())
        self._watches[chat_id] = await self.store.subscribe(query, on_event)
        live = True

    def unwatch(self, chat_id: str) -> None:
        sub = self._watches.pop(chat_id, None)
        if sub is not None:
            sub.release()

    def release(self) -> None:
        for chat_id in list(self._watches):
            self.unwatch(chat_id)
