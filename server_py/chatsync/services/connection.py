from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from chatsync.store.base import RemoteStore, StoreEvent, Subscription
from chatsync.store.paths import CONNECTED_PATH

logger = logging.getLogger(__name__)

ConnectionHandler = Callable[[bool], Awaitable[None]]


class ConnectionMonitor:
    """Watches ``.info/connected`` and runs handlers on every transition."""

    def __init__(self, store: RemoteStore) -> None:
        self.store = store
        self.connected = store.connected
        self._handlers: List[ConnectionHandler] = []
        self._tasks: Set[asyncio.Task] = set()
        self._subscription: Optional[Subscription] = None

    def add_handler(self, handler: ConnectionHandler) -> None:
        self._handlers.append(handler)

    async def start(self) -> None:
        if self._subscription is None:
            self.connected = self.store.connected
            self._subscription = await self.store.subscribe(CONNECTED_PATH, self._on_event, kind="value")

    def _on_event(self, event: StoreEvent) -> None:
        connected = bool(event.value)
        if connected == self.connected:
            return
        self.connected = connected
        for handler in self._handlers:
            task = asyncio.ensure_future(self._run(handler, connected))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: ConnectionHandler, connected: bool) -> None:
        try:
            await handler(connected)
        except Exception:  # noqa: BLE001
            logger.exception("Connection handler failed (connected=%s)", connected)

    async def wait_idle(self) -> None:
        """Waits for handlers started by earlier transitions."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def release(self) -> None:
        if self._subscription is not None:
            self._subscription.release()
            self._subscription = None
        for task in list(self._tasks):
            task.cancel()
