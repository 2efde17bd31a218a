from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel

from chatsync.core.config import settings
from chatsync.core.errors import ValidationFailed
from chatsync.schemas.message import MessageBase
from chatsync.services.reconciler import MessageReconciler, messages_from_rows
from chatsync.store.base import Query, RemoteStore
from chatsync.store.paths import messages_path

logger = logging.getLogger(__name__)


class LoadResult(BaseModel):
    messages: List[MessageBase]
    has_more: bool
    anchor_id: Optional[str] = None


class PaginationCursor:
    """Walks a chat's history backwards, one page at a time."""

    def __init__(
        self,
        store: RemoteStore,
        chat_id: str,
        reconciler: MessageReconciler,
        page_size: Optional[int] = None,
    ) -> None:
        self.store = store
        self.chat_id = chat_id
        self.page_size = page_size or settings.MESSAGES_PAGE_SIZE
        self.has_more = True
        self._reconciler = reconciler

    async def load_older(self, page_size: Optional[int] = None, anchor_id: Optional[str] = None) -> LoadResult:
        size = self.page_size if page_size is None else page_size
        if size <= 0:
            raise ValidationFailed("Page size must be positive")

        oldest = self._reconciler.oldest_confirmed()
        if anchor_id is None and oldest is not None:
            anchor_id = oldest[1]
        if not self.has_more:
            return LoadResult(messages=[], has_more=False, anchor_id=anchor_id)

        # one extra row tells whether anything older exists
        query = Query(path=messages_path(self.chat_id), order_by="timestamp", limit_to_last=size + 1)
        if oldest is not None:
            query = query.model_copy(update={"end_before": oldest[0], "end_before_key": oldest[1]})
        rows = await self.store.query(query)

        self.has_more = len(rows) > size
        if self.has_more:
            rows = rows[1:]
        page = [message for message in messages_from_rows(rows, self.chat_id) if message.id not in self._reconciler]
        self._reconciler.prepend(page)
        logger.debug("Loaded %d older messages for %s (has_more=%s)", len(page), self.chat_id, self.has_more)
        return LoadResult(messages=page, has_more=self.has_more, anchor_id=anchor_id)
