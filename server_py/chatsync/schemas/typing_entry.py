from __future__ import annotations

from typing import Optional

from chatsync.schemas.base import StoreModel


class TypingEntry(StoreModel):
    uid: str
    display_name: Optional[str] = None
    timestamp: int = 0
