"""Merges confirmed messages and optimistic placeholders.

Placeholders are matched to their confirmed record through ``clientId``.
Records written by clients that do not send one fall back to sender, body
and a timestamp window. A confirmed record that replaces a placeholder keeps
the placeholder's insertion slot, so equal timestamps never reorder.
"""
from __future__ import annotations

import itertools
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from chatsync.core.config import settings
from chatsync.schemas.message import MessageBase, parse_message
from chatsync.store.base import now_ms

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def new_temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(message_id: Optional[str]) -> bool:
    return bool(message_id) and message_id.startswith(TEMP_PREFIX)


class DisplayMessage:
    """One row of the rendered message list."""

    def __init__(
        self,
        message: MessageBase,
        status: DeliveryStatus,
        seq: int,
        provisional_ts: int,
        temp_id: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status = status
        self.seq = seq
        self.provisional_ts = provisional_ts
        self.temp_id = temp_id
        self.error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def optimistic(self) -> bool:
        return self.temp_id is not None and self.message.id == self.temp_id

    @property
    def sort_ts(self) -> int:
        if self.message.timestamp is not None:
            return self.message.timestamp
        return self.provisional_ts

    def __repr__(self) -> str:
        return f"DisplayMessage(id={self.id!r}, status={self.status.value}, ts={self.sort_ts})"


def messages_from_rows(rows: Iterable[Tuple[str, Any]], chat_id: Optional[str] = None) -> List[MessageBase]:
    messages = []
    for key, value in rows:
        if not isinstance(value, dict):
            continue
        try:
            messages.append(parse_message(key, value, chat_id))
        except ValidationError as exc:
            logger.warning("Skipping malformed message %s: %s", key, exc.errors()[0].get("msg"))
    return messages


class MessageReconciler:
    def __init__(
        self,
        window_seconds: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if window_seconds is None:
            window_seconds = settings.RECONCILE_WINDOW_SECONDS
        self.window_ms = int(window_seconds * 1000)
        self._clock = clock or now_ms
        self._entries: Dict[str, DisplayMessage] = {}
        self._seq = itertools.count()
        self._low_seq = 0
        # message ids acknowledged by a send before their event arrived
        self._acked: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._entries

    def get(self, message_id: str) -> Optional[DisplayMessage]:
        return self._entries.get(message_id)

    def view(self) -> List[DisplayMessage]:
        return sorted(self._entries.values(), key=lambda entry: (entry.sort_ts, entry.seq))

    def messages(self) -> List[MessageBase]:
        return [entry.message for entry in self.view()]

    def pending(self) -> List[DisplayMessage]:
        return [entry for entry in self.view() if entry.optimistic]

    def oldest_confirmed(self) -> Optional[Tuple[int, str]]:
        """``(timestamp, id)`` of the oldest message known to the server."""
        confirmed = [
            (entry.message.timestamp, entry.id)
            for entry in self._entries.values()
            if not entry.optimistic and entry.message.timestamp is not None
        ]
        return min(confirmed) if confirmed else None

    # Optimistic side

    def add_optimistic(self, message: MessageBase) -> DisplayMessage:
        if not is_temp_id(message.id):
            message = message.model_copy(update={"id": new_temp_id()})
        if not message.client_id:
            message = message.model_copy(update={"client_id": uuid.uuid4().hex})
        entry = DisplayMessage(
            message,
            DeliveryStatus.PENDING,
            seq=next(self._seq),
            provisional_ts=message.timestamp if message.timestamp is not None else self._clock(),
            temp_id=message.id,
        )
        self._entries[message.id] = entry
        return entry

    def confirm_sent(self, temp_id: str, message_id: str) -> None:
        """Records the server id handed back by a successful send."""
        if message_id in self._entries:
            # the confirmed event won the race
            placeholder = self._entries.get(temp_id)
            if placeholder is not None and placeholder.optimistic:
                del self._entries[temp_id]
            return
        if temp_id in self._entries:
            self._acked[message_id] = temp_id

    def mark_failed(self, temp_id: str, error: Any = None) -> bool:
        entry = self._entries.get(temp_id)
        if entry is None or not entry.optimistic:
            return False
        entry.status = DeliveryStatus.FAILED
        entry.error = str(error) if error is not None else None
        return True

    def mark_pending(self, temp_id: str) -> bool:
        entry = self._entries.get(temp_id)
        if entry is None or not entry.optimistic:
            return False
        entry.status = DeliveryStatus.PENDING
        entry.error = None
        return True

    def discard(self, temp_id: str) -> bool:
        entry = self._entries.get(temp_id)
        if entry is None or not entry.optimistic:
            return False
        del self._entries[temp_id]
        for message_id, acked in list(self._acked.items()):
            if acked == temp_id:
                del self._acked[message_id]
        return True

    # Confirmed side

    def apply_confirmed(self, message: MessageBase) -> DisplayMessage:
        existing = self._entries.get(message.id)
        if existing is not None and not existing.optimistic:
            existing.message = message
            existing.status = DeliveryStatus.SENT
            return existing

        placeholder = self._match(message)
        if placeholder is not None:
            del self._entries[placeholder.temp_id]
            entry = DisplayMessage(
                message,
                DeliveryStatus.SENT,
                seq=placeholder.seq,
                provisional_ts=placeholder.provisional_ts,
                temp_id=placeholder.temp_id,
            )
        else:
            entry = DisplayMessage(message, DeliveryStatus.SENT, seq=next(self._seq), provisional_ts=self._clock())
        self._entries[message.id] = entry
        return entry

    def prepend(self, messages: List[MessageBase]) -> List[DisplayMessage]:
        """Adds an older page; ``messages`` is oldest first."""
        added = []
        for message in reversed(messages):
            if message.id in self._entries:
                continue
            self._low_seq -= 1
            entry = DisplayMessage(message, DeliveryStatus.SENT, seq=self._low_seq, provisional_ts=self._clock())
            self._entries[message.id] = entry
            added.append(entry)
        added.reverse()
        return added

    def remove(self, message_id: str) -> bool:
        return self._entries.pop(message_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._acked.clear()

    def _match(self, message: MessageBase) -> Optional[DisplayMessage]:
        temp_id = self._acked.pop(message.id, None)
        if temp_id is not None:
            entry = self._entries.get(temp_id)
            if entry is not None and entry.optimistic:
                return entry

        placeholders = [entry for entry in self._entries.values() if entry.optimistic]
        if not placeholders:
            return None

        if message.client_id:
            for entry in placeholders:
                if entry.message.client_id == message.client_id:
                    return entry
            return None

        reference = message.timestamp if message.timestamp is not None else self._clock()
        candidates = [
            entry for entry in placeholders
            if entry.message.sender == message.sender
            and getattr(entry.message, "type", None) == getattr(message, "type", None)
            and entry.message.body == message.body
            and abs(reference - entry.provisional_ts) <= self.window_ms
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda entry: entry.seq)
        if len(candidates) > 1:
            logger.warning(
                "Message %s matches %d pending placeholders, using the oldest (%s)",
                message.id, len(candidates), candidates[0].temp_id,
            )
        return candidates[0]
