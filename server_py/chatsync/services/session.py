"""Client-side chat session.

``ChatSessionManager`` owns every live subscription for the signed-in user:
the selected chat's newest page, its typing map, unread watches on other
chats and the connection status. Switching chats releases the old handles
before the new ones are opened.
"""
from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from chatsync.core.config import settings
from chatsync.core.errors import ChatSyncError, ValidationFailed, is_transient
from chatsync.schemas.message import (
    AnnouncementMessage,
    FileMessage,
    MessageBase,
    PollMessage,
    PollOption,
    TextMessage,
    VoiceMessage,
    file_category,
    parse_message,
)
from chatsync.schemas.user import UserStatus
from chatsync.services.chat import ChatService, validate_outgoing
from chatsync.services.connection import ConnectionMonitor
from chatsync.services.notifications import Notifier
from chatsync.services.outbox import Outbox, OutboxItem
from chatsync.services.pagination import LoadResult, PaginationCursor
from chatsync.services.polls import PollState, PollVoting
from chatsync.services.presence import PresenceBridge, TypingBridge
from chatsync.services.reconciler import DeliveryStatus, DisplayMessage, MessageReconciler, new_temp_id
from chatsync.services.search import search_messages
from chatsync.services.unread import UnreadCounters, UnreadTracker
from chatsync.store.base import Query, RemoteStore, StoreEvent, Subscription
from chatsync.store.paths import messages_path

logger = logging.getLogger(__name__)


class ChatSessionManager:
    def __init__(
        self,
        store: RemoteStore,
        uid: str,
        display_name: Optional[str] = None,
        *,
        page_size: Optional[int] = None,
        notifier: Optional[Notifier] = None,
        reconcile_window: Optional[float] = None,
        typing_debounce: Optional[float] = None,
        typing_stale: Optional[float] = None,
        outbox_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.uid = uid
        self.display_name = display_name
        self.page_size = page_size or settings.MESSAGES_PAGE_SIZE
        self.reconcile_window = reconcile_window
        self.typing_debounce = typing_debounce
        self.typing_stale = typing_stale

        self.notifier = notifier or Notifier(clock=store.now)
        self.chats = ChatService(store)
        self.polls = PollVoting(store)
        self.unread = UnreadTracker(store, uid, notifier=self.notifier)
        self.presence = PresenceBridge(store, uid)
        self.connection = ConnectionMonitor(store)
        self.outbox = Outbox(
            self.chats.send_message,
            on_sent=self._on_sent,
            on_failed=self._on_failed,
            max_attempts=outbox_attempts,
            retry_delay=retry_delay,
        )

        self.chat_id: Optional[str] = None
        self.reconciler: Optional[MessageReconciler] = None
        self.cursor: Optional[PaginationCursor] = None
        self.typing_bridge: Optional[TypingBridge] = None
        self._subscription: Optional[Subscription] = None
        self._unread_chats: Set[str] = set()
        self._presence_started = False

    # Lifecycle

    async def start(self, status: Optional[UserStatus] = None, presence: bool = True) -> None:
        self.connection.add_handler(self._on_connection)
        await self.connection.start()
        if presence:
            await self.presence.connect(status)
            self._presence_started = True

    async def close(self) -> None:
        await self._leave_chat(rewatch=False)
        self.unread.release()
        self.connection.release()
        if self._presence_started:
            self._presence_started = False
            try:
                await self.presence.disconnect()
            except ChatSyncError as exc:
                logger.warning("Could not write offline presence for %s: %s", self.uid, exc)

    async def __aenter__(self) -> "ChatSessionManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _on_connection(self, connected: bool) -> None:
        if not connected:
            self.notifier.warning("Connection lost. Messages will be sent when you're back online.")
            return
        if self._presence_started:
            await self.presence.rearm()
        if len(self.outbox):
            await self.outbox.flush()

    # Chat selection

    async def select_chat(self, chat_id: str) -> None:
        if chat_id == self.chat_id:
            return
        await self._leave_chat()

        self.chat_id = chat_id
        self.unread.focus(chat_id)
        self.unread.unwatch(chat_id)
        self.reconciler = MessageReconciler(self.reconcile_window, clock=self.store.now)
        self.cursor = PaginationCursor(self.store, chat_id, self.reconciler, self.page_size)

        await self._subscribe_messages(chat_id)
        # a short first page means the whole history is already loaded
        self.cursor.has_more = len(self.reconciler) >= self.page_size
        for item in self.outbox.for_chat(chat_id):
            self.reconciler.add_optimistic(item.message)
            if item.failed:
                self.reconciler.mark_failed(item.temp_id, item.error)

        self.typing_bridge = TypingBridge(
            self.store,
            chat_id,
            self.uid,
            self.display_name,
            debounce=self.typing_debounce,
            stale=self.typing_stale,
        )
        try:
            await self.typing_bridge.start()
        except ChatSyncError as exc:
            logger.warning("Typing indicators unavailable for %s: %s", chat_id, exc)
        logger.debug("Selected chat %s (%d messages)", chat_id, len(self.reconciler))

    async def _subscribe_messages(self, chat_id: str, oldest: Optional[Tuple[int, str]] = None) -> None:
        """Follows the newest page, or everything from ``oldest`` onwards."""
        if oldest is None:
            query = Query(path=messages_path(chat_id), order_by="timestamp", limit_to_last=self.page_size)
        else:
            query = Query(
                path=messages_path(chat_id), order_by="timestamp", start_at=oldest[0], start_at_key=oldest[1],
            )
        previous = self._subscription
        subscription = await self.store.subscribe(query, self._on_message_event, on_error=self._on_listener_error)
        if chat_id != self.chat_id:
            subscription.release()
            return
        self._subscription = subscription
        if previous is not None:
            previous.release()

    async def _leave_chat(self, rewatch: bool = True) -> None:
        left = self.chat_id
        if self._subscription is not None:
            self._subscription.release()
            self._subscription = None
        if self.typing_bridge is not None:
            await self.typing_bridge.close()
            self.typing_bridge = None
        self.reconciler = None
        self.cursor = None
        self.chat_id = None
        self.unread.focus(None)
        if rewatch and left in self._unread_chats:
            await self._watch_unread(left)

    def _on_message_event(self, event: StoreEvent) -> None:
        reconciler, chat_id = self.reconciler, self.chat_id
        if reconciler is None:
            return
        if event.kind == "child_removed":
            reconciler.remove(event.key)
            return
        if not isinstance(event.value, dict):
            return
        try:
            message = parse_message(event.key, event.value, chat_id)
        except ValidationError:
            logger.warning("Ignoring malformed message %s in %s", event.key, chat_id)
            return
        reconciler.apply_confirmed(message)

    def _on_listener_error(self, exc: BaseException) -> None:
        logger.warning("Message listener for %s failed, showing cached messages: %s", self.chat_id, exc)
        self.notifier.warning("Couldn't refresh messages. Showing what was loaded.")

    @property
    def messages(self) -> List[DisplayMessage]:
        return self.reconciler.view() if self.reconciler is not None else []

    def _require_chat(self) -> str:
        if self.chat_id is None:
            raise ValidationFailed("No chat selected")
        return self.chat_id

    # Reading

    async def viewport(self, at_bottom: bool, visible_ids: Optional[Iterable[str]] = None) -> int:
        """Marks the chat read while the newest message is on screen."""
        if not at_bottom or self.chat_id is None:
            return 0
        chat_id = self.chat_id
        await self.unread.mark_read(chat_id)

        visible = set(visible_ids) if visible_ids is not None else None
        unread = [
            entry.id for entry in self.messages
            if entry.status == DeliveryStatus.SENT
            and entry.message.sender != self.uid
            and not entry.message.is_read_by(self.uid)
            and (visible is None or entry.id in visible)
        ]
        if not unread:
            return 0
        try:
            return await self.chats.mark_messages_read(chat_id, self.uid, unread)
        except ChatSyncError as exc:
            self.notifier.report(exc, "update read receipts")
            return 0

    async def load_older(self, page_size: Optional[int] = None, anchor_id: Optional[str] = None) -> LoadResult:
        chat_id = self._require_chat()
        try:
            result = await self.cursor.load_older(page_size, anchor_id)
        except ValidationFailed:
            raise
        except ChatSyncError as exc:
            logger.warning("Could not load older messages for %s: %s", self.chat_id, exc)
            self.notifier.report(exc, "load older messages")
            return LoadResult(messages=[], has_more=self.cursor.has_more, anchor_id=anchor_id)
        if result.messages and self.reconciler is not None:
            # edits, deletes and read markers on the older page must keep arriving
            await self._subscribe_messages(chat_id, self.reconciler.oldest_confirmed())
        return result

    async def watch_chats(self, chat_ids: Optional[Iterable[str]] = None) -> None:
        """Hydrates and watches unread counters of chats in the sidebar."""
        if chat_ids is None:
            chat_ids = await self.chats.user_chat_ids(self.uid)
        for chat_id in chat_ids:
            self._unread_chats.add(chat_id)
            if chat_id == self.chat_id:
                continue
            await self._watch_unread(chat_id)

    async def _watch_unread(self, chat_id: str) -> None:
        try:
            await self.unread.hydrate(chat_id)
            await self.unread.watch(chat_id)
        except ChatSyncError as exc:
            logger.warning("Unread counters unavailable for %s: %s", chat_id, exc)

    def unread_counters(self, chat_id: str) -> UnreadCounters:
        return self.unread.counters(chat_id)

    def search(self, query: str = "", **filters) -> List[MessageBase]:
        loaded = [entry.message for entry in self.messages if entry.status == DeliveryStatus.SENT]
        return search_messages(loaded, query, viewer=self.uid, **filters)

    # Sending

    async def send_text(self, content: str, reply_to: Optional[str] = None) -> str:
        return await self._send(TextMessage(
            sender=self.uid, sender_name=self.display_name, content=content, reply_to=reply_to,
        ))

    async def send_announcement(self, content: str) -> str:
        return await self._send(AnnouncementMessage(sender=self.uid, sender_name=self.display_name, content=content))

    async def send_file(
        self,
        file_name: str,
        file_type: str,
        file_size: int,
        file_data: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> str:
        return await self._send(FileMessage(
            sender=self.uid,
            sender_name=self.display_name,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            file_category=file_category(file_type),
            file_data=file_data,
            content=caption,
        ))

    async def send_voice(self, audio_data: str, duration: float, mime_type: Optional[str] = None) -> str:
        return await self._send(VoiceMessage(
            sender=self.uid,
            sender_name=self.display_name,
            audio_data=audio_data,
            duration=duration,
            mime_type=mime_type,
        ))

    async def create_poll(self, question: str, options: List[str]) -> str:
        return await self._send(PollMessage(
            sender=self.uid,
            sender_name=self.display_name,
            question=question,
            options={self.store.push_key(): PollOption(text=text) for text in options},
        ))

    async def _send(self, message: MessageBase) -> str:
        chat_id = self._require_chat()
        validate_outgoing(message)
        temp_id = new_temp_id()
        message = message.model_copy(update={"id": temp_id, "chat_id": chat_id, "client_id": uuid.uuid4().hex})
        self.reconciler.add_optimistic(message)
        self.outbox.enqueue(chat_id, temp_id, message)
        if self.store.connected:
            await self.outbox.flush()
        else:
            self.notifier.warning("You're offline. The message will be sent when you reconnect.")
        return temp_id

    def _on_sent(self, item: OutboxItem, message_id: str) -> None:
        if self.reconciler is not None and item.chat_id == self.chat_id:
            self.reconciler.confirm_sent(item.temp_id, message_id)

    def _on_failed(self, item: OutboxItem, exc: BaseException) -> None:
        if is_transient(exc):
            self.notifier.warning("You're offline. The message will be sent when you reconnect.")
            return
        if self.reconciler is not None and item.chat_id == self.chat_id:
            self.reconciler.mark_failed(item.temp_id, exc)
        self.notifier.report(exc, "send the message")

    async def retry(self, temp_id: str) -> bool:
        if not self.outbox.retry(temp_id):
            entry = self.reconciler.get(temp_id) if self.reconciler is not None else None
            if entry is None or entry.status != DeliveryStatus.FAILED:
                return False
            self.outbox.enqueue(self.chat_id, temp_id, entry.message)
        if self.reconciler is not None:
            self.reconciler.mark_pending(temp_id)
        if self.store.connected:
            await self.outbox.flush()
        return True

    async def discard(self, temp_id: str) -> bool:
        dropped = self.outbox.discard(temp_id)
        if self.reconciler is not None:
            dropped = self.reconciler.discard(temp_id) or dropped
        if dropped and len(self.outbox) and self.store.connected:
            await self.outbox.flush()
        return dropped

    # Message actions

    async def edit_message(self, message_id: str, content: str) -> None:
        chat_id = self._require_chat()
        try:
            await self.chats.edit_message(chat_id, message_id, self.uid, content, self.display_name)
        except ChatSyncError as exc:
            self.notifier.report(exc, "edit the message")
            raise

    async def delete_message(self, message_id: str) -> None:
        chat_id = self._require_chat()
        try:
            await self.chats.delete_message(chat_id, message_id, self.uid, self.display_name)
        except ChatSyncError as exc:
            self.notifier.report(exc, "delete the message")
            raise

    async def react(self, message_id: str, emoji: str) -> Optional[str]:
        chat_id = self._require_chat()
        try:
            return await self.chats.toggle_reaction(chat_id, message_id, self.uid, emoji)
        except ChatSyncError as exc:
            self.notifier.report(exc, "react to the message")
            raise

    async def vote(self, message_id: str, option_id: str) -> PollState:
        chat_id = self._require_chat()
        try:
            return await self.polls.vote(chat_id, message_id, option_id, self.uid)
        except ChatSyncError as exc:
            self.notifier.report(exc, "vote")
            raise

    # Typing

    async def typing(self) -> None:
        if self.typing_bridge is not None:
            await self.typing_bridge.keystroke()

    async def stop_typing(self) -> None:
        if self.typing_bridge is not None:
            await self.typing_bridge.stop()

    def typing_summary(self) -> Optional[str]:
        if self.typing_bridge is None:
            return None
        return self.typing_bridge.summary()
