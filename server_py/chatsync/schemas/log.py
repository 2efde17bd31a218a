from __future__ import annotations

from typing import Literal, Optional

from chatsync.schemas.base import StoreModel


class LogEntry(StoreModel):
    id: Optional[str] = None
    type: Literal["edit", "delete"]
    message_id: str
    actor: str
    actor_name: Optional[str] = None
    timestamp: Optional[int] = None
    original_content: str = ""
    new_content: Optional[str] = None
