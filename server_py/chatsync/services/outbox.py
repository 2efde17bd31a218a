from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Set

from chatsync.core.config import settings
from chatsync.core.errors import ChatSyncError, NetworkUnavailable
from chatsync.schemas.message import MessageBase

logger = logging.getLogger(__name__)

SendFunc = Callable[[str, MessageBase], Awaitable[str]]


class OutboxItem:
    def __init__(self, chat_id: str, temp_id: str, message: MessageBase) -> None:
        self.chat_id = chat_id
        self.temp_id = temp_id
        self.message = message
        self.attempts = 0
        self.failed = False
        self.error: Optional[str] = None

    def __repr__(self) -> str:
        return f"OutboxItem({self.temp_id!r}, chat={self.chat_id!r}, failed={self.failed})"


class Outbox:
    """FIFO of sends waiting for the store.

    Items of one chat leave strictly in order. A permanently failed item
    blocks the later sends of its chat until it is retried or discarded;
    other chats keep flowing.
    """

    def __init__(
        self,
        send: SendFunc,
        on_sent: Optional[Callable[[OutboxItem, str], None]] = None,
        on_failed: Optional[Callable[[OutboxItem, BaseException], None]] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self._send = send
        self._on_sent = on_sent
        self._on_failed = on_failed
        self.max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS
        self.retry_delay = settings.OUTBOX_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._queue: Deque[OutboxItem] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def items(self) -> List[OutboxItem]:
        return list(self._queue)

    @property
    def blocked(self) -> bool:
        return any(item.failed for item in self._queue)

    @property
    def blocked_chats(self) -> Set[str]:
        return {item.chat_id for item in self._queue if item.failed}

    def for_chat(self, chat_id: str) -> List[OutboxItem]:
        return [item for item in self._queue if item.chat_id == chat_id]

    def find(self, temp_id: str) -> Optional[OutboxItem]:
        for item in self._queue:
            if item.temp_id == temp_id:
                return item
        return None

    def _next_ready(self) -> Optional[OutboxItem]:
        blocked: Set[str] = set()
        for item in self._queue:
            if item.failed or item.chat_id in blocked:
                blocked.add(item.chat_id)
                continue
            return item
        return None

    def enqueue(self, chat_id: str, temp_id: str, message: MessageBase) -> OutboxItem:
        item = OutboxItem(chat_id, temp_id, message)
        self._queue.append(item)
        return item

    async def flush(self) -> int:
        """Sends ready items in order; returns how many went out."""
        sent = 0
        async with self._lock:
            while True:
                item = self._next_ready()
                if item is None:
                    break
                try:
                    message_id = await self._send(item.chat_id, item.message)
                except NetworkUnavailable as exc:
                    item.attempts += 1
                    if item.attempts >= self.max_attempts:
                        logger.info("Store unreachable, %d sends waiting for reconnect", len(self._queue))
                        item.attempts = 0
                        self._notify_failed(item, exc)
                        break
                    await asyncio.sleep(self.retry_delay)
                    continue
                except ChatSyncError as exc:
                    item.failed = True
                    item.error = str(exc)
                    logger.warning("Send %s to %s failed: %s", item.temp_id, item.chat_id, exc)
                    self._notify_failed(item, exc)
                    continue
                if item in self._queue:
                    self._queue.remove(item)
                sent += 1
                if self._on_sent is not None:
                    self._on_sent(item, message_id)
        return sent

    def _notify_failed(self, item: OutboxItem, exc: BaseException) -> None:
        if self._on_failed is not None:
            self._on_failed(item, exc)

    def retry(self, temp_id: str) -> bool:
        item = self.find(temp_id)
        if item is None:
            return False
        item.failed = False
        item.attempts = 0
        item.error = None
        return True

    def discard(self, temp_id: str) -> bool:
        item = self.find(temp_id)
        if item is None:
            return False
        self._queue.remove(item)
        return True
