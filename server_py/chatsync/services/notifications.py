from __future__ import annotations

import logging
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel

from chatsync.core.config import settings
from chatsync.core.errors import (
    ChatSyncError,
    NetworkUnavailable,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from chatsync.store.base import now_ms

logger = logging.getLogger(__name__)

NoticeLevel = Literal["info", "warning", "error"]

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class Notice(BaseModel):
    level: NoticeLevel
    text: str
    created_at: int


class Notifier:
    """Transient user-facing notices (toasts / inline banners)."""

    def __init__(self, limit: Optional[int] = None, clock: Optional[Callable[[], int]] = None) -> None:
        self.limit = limit or settings.NOTICE_LIMIT
        self._clock = clock or now_ms
        self._notices: List[Notice] = []

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def info(self, text: str) -> Notice:
        return self._push("info", text)

    def warning(self, text: str) -> Notice:
        return self._push("warning", text)

    def error(self, text: str) -> Notice:
        return self._push("error", text)

    def report(self, exc: BaseException, action: str) -> Notice:
        """Turns a failed operation into a notice."""
        if isinstance(exc, NetworkUnavailable):
            return self.warning(f"You're offline. Could not {action}.")
        if isinstance(exc, PermissionDenied):
            return self.error(f"You don't have permission to {action}.")
        if isinstance(exc, NotFound):
            return self.error(f"Could not {action}: it no longer exists.")
        if isinstance(exc, ValidationFailed):
            return self.warning(str(exc))
        if isinstance(exc, ChatSyncError):
            return self.error(f"Could not {action}.")
        return self.error(f"Unexpected error while trying to {action}.")

    def dismiss(self, notice: Notice) -> None:
        try:
            self._notices.remove(notice)
        except ValueError:
            pass

    def clear(self) -> None:
        self._notices.clear()

    def _push(self, level: NoticeLevel, text: str) -> Notice:
        logger.log(_LOG_LEVELS[level], "notice: %s", text)
        notice = Notice(level=level, text=text, created_at=self._clock())
        self._notices.append(notice)
        if len(self._notices) > self.limit:
            del self._notices[: len(self._notices) - self.limit]
        return notice
