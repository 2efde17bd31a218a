from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from chatsync.schemas.message import MessageBase


def message_date(message: MessageBase) -> Optional[date]:
    if message.timestamp is None:
        return None
    return datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc).date()


def search_messages(
    messages: Iterable[MessageBase],
    query: str = "",
    sender: Optional[str] = None,
    on_date: Optional[date] = None,
    content_type: Optional[str] = None,
    viewer: Optional[str] = None,
) -> List[MessageBase]:
    """Filters loaded messages; every given criterion must hold."""
    needle = query.strip().lower()
    results = []
    for message in messages:
        if message.deleted and viewer != message.sender:
            continue
        if needle and needle not in message.body.lower():
            continue
        if sender is not None and message.sender != sender:
            continue
        if on_date is not None and message_date(message) != on_date:
            continue
        if content_type is not None and getattr(message, "type", None) != content_type:
            continue
        results.append(message)
    return results
