from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from chatsync.core.config import settings
from chatsync.core.errors import ChatSyncError
from chatsync.schemas.typing_entry import TypingEntry
from chatsync.schemas.user import UserStatus, presence_for
from chatsync.store.base import SERVER_TIMESTAMP, RemoteStore, StoreEvent, Subscription
from chatsync.store.paths import join, typing_path, user_path

logger = logging.getLogger(__name__)


def typing_summary(names: Sequence[str]) -> Optional[str]:
    if not names:
        return None
    if len(names) == 1:
        return f"{names[0]} is typing..."
    if len(names) == 2:
        return f"{names[0]} and {names[1]} are typing..."
    if len(names) == 3:
        return f"{names[0]}, {names[1]}, and {names[2]} are typing..."
    return f"{names[0]}, {names[1]}, and {len(names) - 2} others are typing..."


class TypingBridge:
    """Publishes the local typing flag and tracks everyone else's."""

    def __init__(
        self,
        store: RemoteStore,
        chat_id: str,
        uid: str,
        display_name: Optional[str] = None,
        debounce: Optional[float] = None,
        stale: Optional[float] = None,
    ) -> None:
        self.store = store
        self.chat_id = chat_id
        self.uid = uid
        self.display_name = display_name
        self.debounce = settings.TYPING_DEBOUNCE_SECONDS if debounce is None else debounce
        self.stale_ms = int((settings.TYPING_STALE_SECONDS if stale is None else stale) * 1000)
        self.typing = False
        self._written_at = 0
        self._clear_task: Optional[asyncio.Task] = None
        self._entries: Dict[str, TypingEntry] = {}
        self._subscription: Optional[Subscription] = None

    @property
    def path(self) -> str:
        return typing_path(self.chat_id, self.uid)

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = await self.store.subscribe(typing_path(self.chat_id), self._on_event)

    def _on_event(self, event: StoreEvent) -> None:
        if event.key == self.uid:
            return
        if event.kind == "child_removed" or not isinstance(event.value, dict):
            self._entries.pop(event.key, None)
            return
        try:
            entry = TypingEntry.model_validate({"uid": event.key, **event.value})
        except ValidationError:
            logger.warning("Ignoring malformed typing entry %s in %s", event.key, self.chat_id)
            return
        self._entries[event.key] = entry

    async def keystroke(self) -> None:
        now = self.store.now()
        if not self.typing or now - self._written_at >= self.stale_ms // 2:
            await self._publish(now)
        self._schedule_clear()

    async def _publish(self, now: int) -> None:
        try:
            self.store.on_disconnect(self.path, None)
            await self.store.set(self.path, {
                "uid": self.uid,
                "displayName": self.display_name or self.uid,
                "timestamp": SERVER_TIMESTAMP,
            })
        except ChatSyncError as exc:
            logger.warning("Could not publish typing state for %s: %s", self.chat_id, exc)
            return
        self.typing = True
        self._written_at = now

    def _schedule_clear(self) -> None:
        if self._clear_task is not None:
            self._clear_task.cancel()
        self._clear_task = asyncio.ensure_future(self._clear_later())

    async def _clear_later(self) -> None:
        await asyncio.sleep(self.debounce)
        self._clear_task = None
        await self.stop()

    async def stop(self) -> None:
        task, self._clear_task = self._clear_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if not self.typing:
            return
        self.typing = False
        self.store.cancel_on_disconnect(self.path)
        try:
            await self.store.remove(self.path)
        except ChatSyncError as exc:
            logger.warning("Could not clear typing state for %s: %s", self.chat_id, exc)

    def typists(self) -> List[TypingEntry]:
        cutoff = self.store.now() - self.stale_ms
        fresh = [entry for entry in self._entries.values() if entry.timestamp >= cutoff]
        return sorted(fresh, key=lambda entry: (entry.timestamp, entry.uid))

    def summary(self) -> Optional[str]:
        return typing_summary([entry.display_name or entry.uid for entry in self.typists()])

    async def close(self) -> None:
        await self.stop()
        if self._subscription is not None:
            self._subscription.release()
            self._subscription = None
        self._entries.clear()


class PresenceBridge:
    """Keeps ``/users/{uid}`` presence fields in step with the connection."""

    def __init__(self, store: RemoteStore, uid: str) -> None:
        self.store = store
        self.uid = uid
        self.status: Optional[UserStatus] = None

    def _field(self, name: str) -> str:
        return join(user_path(self.uid), name)

    def _arm(self) -> None:
        self.store.on_disconnect(self._field("online"), False)
        self.store.on_disconnect(self._field("presence"), "offline")
        self.store.on_disconnect(self._field("status"), UserStatus.OFFLINE.value)
        self.store.on_disconnect(self._field("lastSeen"), SERVER_TIMESTAMP)

    def _disarm(self) -> None:
        for name in ("online", "presence", "status", "lastSeen"):
            self.store.cancel_on_disconnect(self._field(name))

    async def connect(self, status: Optional[UserStatus] = None) -> UserStatus:
        if status is None:
            current = await self.store.get(user_path(self.uid)) or {}
            remembered = current.get("lastActiveStatus") or current.get("status")
            try:
                status = UserStatus(remembered) if remembered else UserStatus.AVAILABLE
            except ValueError:
                logger.warning("Ignoring unknown stored status %r for %s", remembered, self.uid)
                status = UserStatus.AVAILABLE
            if status == UserStatus.OFFLINE:
                status = UserStatus.AVAILABLE
        # hook first, so a drop between the two calls still ends offline
        self._arm()
        await self._write_online(UserStatus(status))
        return self.status

    async def _write_online(self, status: UserStatus) -> None:
        await self.store.update(user_path(self.uid), {
            "online": True,
            "status": status.value,
            "presence": presence_for(status).value,
            "lastActiveStatus": status.value,
            "lastSeen": SERVER_TIMESTAMP,
        })
        self.status = status

    async def set_status(self, status: UserStatus) -> None:
        status = UserStatus(status)
        if status == UserStatus.OFFLINE:
            await self.disconnect()
            return
        self._arm()
        await self._write_online(status)

    async def rearm(self) -> None:
        """Called after reconnecting."""
        if self.status is None or self.status == UserStatus.OFFLINE:
            return
        self._arm()
        await self._write_online(self.status)

    async def disconnect(self) -> None:
        self._disarm()
        self.status = UserStatus.OFFLINE
        await self.store.update(user_path(self.uid), {
            "online": False,
            "status": UserStatus.OFFLINE.value,
            "presence": "offline",
            "lastSeen": SERVER_TIMESTAMP,
        })
