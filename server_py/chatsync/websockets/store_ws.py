from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatsync.core.config import settings
from chatsync.core.errors import ChatSyncError, ValidationFailed
from chatsync.core.security import check_write, decode_uid
from chatsync.schemas.store import SocketFrame, event_frame
from chatsync.store import paths
from chatsync.store.base import Query, RemoteStore, StoreEvent, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


class StoreConnection:
    """One authenticated socket: its listeners, hooks and outgoing queue."""

    def __init__(self, websocket: WebSocket, uid: str, queue_limit: Optional[int] = None) -> None:
        self.websocket = websocket
        self.uid = uid
        self.subscriptions: Dict[int, Subscription] = {}
        self.disconnect_ops: Dict[str, Any] = {}
        self._outgoing: asyncio.Queue = asyncio.Queue(maxsize=queue_limit or settings.WS_QUEUE_LIMIT)
        self._sender: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._sender = asyncio.ensure_future(self._drain())

    def send(self, frame: dict) -> None:
        # store listeners are plain callbacks; frames leave through the queue in order
        try:
            self._outgoing.put_nowait(frame)
        except asyncio.QueueFull:
            self._overflow()

    def _overflow(self) -> None:
        """Drops every listener of a client that stopped reading; it has to subscribe again."""
        logger.warning("Outgoing queue for %s is full, dropping %d subscriptions", self.uid, len(self.subscriptions))
        for sub in self.subscriptions.values():
            sub.release()
        self.subscriptions.clear()
        while not self._outgoing.empty():
            self._outgoing.get_nowait()
        self._outgoing.put_nowait({"type": "error", "code": "overflow", "detail": "Too many pending frames"})

    async def _drain(self) -> None:
        while True:
            frame = await self._outgoing.get()
            try:
                await self.websocket.send_json(frame)
            except Exception:  # noqa: BLE001
                logger.debug("Dropping frames for %s, socket is gone", self.uid)
                return

    def forwarder(self, sub_id: int):
        def forward(event: StoreEvent) -> None:
            self.send(event_frame(sub_id, event.kind, event.key, event.value))
        return forward

    async def close(self, store: RemoteStore) -> None:
        for sub in self.subscriptions.values():
            sub.release()
        self.subscriptions.clear()
        if self._sender is not None:
            self._sender.cancel()
            self._sender = None
        ops, self.disconnect_ops = self.disconnect_ops, {}
        if ops:
            logger.info("Running %d on-disconnect writes for %s", len(ops), self.uid)
            try:
                await store.apply_writes(ops)
            except ChatSyncError as exc:
                logger.warning("On-disconnect writes for %s failed: %s", self.uid, exc)


class StoreConnectionManager:
    def __init__(self) -> None:
        self._connections: Dict[WebSocket, StoreConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, websocket: WebSocket, uid: str) -> StoreConnection:
        connection = StoreConnection(websocket, uid)
        connection.start()
        async with self._lock:
            self._connections[websocket] = connection
        return connection

    async def unregister(self, websocket: WebSocket) -> Optional[StoreConnection]:
        async with self._lock:
            return self._connections.pop(websocket, None)

    @property
    def count(self) -> int:
        return len(self._connections)


store_manager = StoreConnectionManager()


def _frame_query(frame: SocketFrame) -> Optional[Query]:
    bounds = (frame.order_by, frame.start_at, frame.end_before, frame.limit_to_first, frame.limit_to_last)
    if all(value is None for value in bounds):
        return None
    return Query(
        path=frame.path,
        order_by=None if frame.order_by == "$key" else frame.order_by,
        start_at=frame.start_at,
        end_before=frame.end_before,
        limit_to_first=frame.limit_to_first,
        limit_to_last=frame.limit_to_last,
    )


async def _handle_frame(store: RemoteStore, connection: StoreConnection, frame: SocketFrame) -> None:
    if frame.op == "subscribe":
        if frame.id is None or frame.path is None:
            raise ValidationFailed("subscribe needs an id and a path")
        previous = connection.subscriptions.pop(frame.id, None)
        if previous is not None:
            previous.release()

        def on_error(exc: BaseException, sub_id: int = frame.id) -> None:
            connection.send({"type": "error", "id": sub_id, "code": getattr(exc, "code", "error"), "detail": str(exc)})

        target = _frame_query(frame) or frame.path
        # acknowledged first; the initial snapshot follows as event frames
        connection.send({"type": "subscribed", "id": frame.id})
        connection.subscriptions[frame.id] = await store.subscribe(
            target, connection.forwarder(frame.id), kind=frame.kind, on_error=on_error,
        )
    elif frame.op == "unsubscribe":
        sub = connection.subscriptions.pop(frame.id, None)
        if sub is not None:
            sub.release()
        connection.send({"type": "unsubscribed", "id": frame.id})
    elif frame.op == "onDisconnect":
        path = paths.validate_path(frame.path or "")
        check_write(connection.uid, path)
        connection.disconnect_ops[path] = frame.value
        connection.send({"type": "ok", "id": frame.id})
    elif frame.op == "cancelOnDisconnect":
        connection.disconnect_ops.pop(paths.normalize(frame.path or ""), None)
        connection.send({"type": "ok", "id": frame.id})


@router.websocket("/ws/store")
async def store_websocket(websocket: WebSocket) -> None:
    await websocket.accept()
    store: RemoteStore = websocket.app.state.store
    connection: Optional[StoreConnection] = None
    try:
        init_payload = await websocket.receive_json()
        token = init_payload.get("token") if isinstance(init_payload, dict) else None
        uid = decode_uid(token)
        if uid is None:
            await websocket.close(code=4403)
            return
        connection = await store_manager.register(websocket, uid)
        connection.send({"type": "ready", "uid": uid})

        while True:
            data = await websocket.receive_json()
            try:
                frame = SocketFrame.model_validate(data)
            except ValidationError:
                connection.send({"type": "error", "code": "validation_failed", "detail": "Malformed frame"})
                continue
            try:
                await _handle_frame(store, connection, frame)
            except ChatSyncError as exc:
                connection.send({"type": "error", "id": frame.id, "code": exc.code, "detail": str(exc)})
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001
        logger.exception("Store websocket error")
        try:
            await websocket.close(code=1011)
        except Exception:  # noqa: BLE001
            pass
    finally:
        if connection is not None:
            await store_manager.unregister(websocket)
            await connection.close(store)
