"""Hierarchical real-time store abstraction.

``RemoteStore`` holds everything that does not depend on where the tree is
kept: server values, multi-path updates, push keys, ordered queries, live
subscriptions with incremental child events, on-disconnect writes and the
``.info/connected`` status path. Implementations provide ``_read`` and an
atomic ``_write_many``.
"""
from __future__ import annotations

import abc
import itertools
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from chatsync.core.errors import NetworkUnavailable, ValidationFailed
from chatsync.store import paths
from chatsync.store.paths import CONNECTED_PATH
from chatsync.store.pushid import PushIdGenerator

logger = logging.getLogger(__name__)

SERVER_TIMESTAMP: Dict[str, Any] = {".sv": "timestamp"}


def increment(delta: Union[int, float]) -> Dict[str, Any]:
    return {".sv": {"increment": delta}}


def now_ms() -> int:
    return int(time.time() * 1000)


def order_rank(value: Any) -> Tuple:
    # null < false < true < numbers < strings < objects
    if value is None:
        return (0,)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4,)


class Query(BaseModel):
    """Ordered child range over ``path``.

    ``order_by`` names a child field; ``None`` orders by key. ``start_at`` is
    inclusive and ``end_before`` exclusive; the optional ``*_key`` values break
    ties between children sharing the same order value.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    order_by: Optional[str] = None
    start_at: Any = None
    start_at_key: Optional[str] = None
    end_before: Any = None
    end_before_key: Optional[str] = None
    limit_to_first: Optional[int] = None
    limit_to_last: Optional[int] = None

    def order_value(self, key: str, value: Any) -> Any:
        if self.order_by is None:
            return key
        if isinstance(value, dict):
            return value.get(self.order_by)
        return None

    def sort_key(self, key: str, value: Any) -> Tuple:
        return (order_rank(self.order_value(key, value)), key)

    def matches(self, key: str, value: Any) -> bool:
        sort_key = self.sort_key(key, value)
        rank = sort_key[0]
        if self.start_at is not None:
            if self.start_at_key is None:
                if rank < order_rank(self.start_at):
                    return False
            elif sort_key < (order_rank(self.start_at), self.start_at_key):
                return False
        if self.end_before is not None:
            if self.end_before_key is None:
                if rank >= order_rank(self.end_before):
                    return False
            elif sort_key >= (order_rank(self.end_before), self.end_before_key):
                return False
        return True

    def apply(self, children: Optional[Dict[str, Any]]) -> List[Tuple[str, Any]]:
        if not isinstance(children, dict):
            return []
        selected = [(key, value) for key, value in children.items() if self.matches(key, value)]
        selected.sort(key=lambda item: self.sort_key(*item))
        if self.limit_to_first is not None:
            selected = selected[: self.limit_to_first]
        if self.limit_to_last is not None:
            selected = selected[-self.limit_to_last:] if self.limit_to_last > 0 else []
        return selected

    def live_window(self, initial: List[Tuple[str, Any]]) -> "Query":
        """Query used for incremental events after the initial snapshot.

        A ``limit_to_last`` window keeps everything from its oldest initial
        child onwards, so newer children arrive as ``child_added`` instead of
        evicting older ones.
        """
        if self.limit_to_last is None:
            return self
        if len(initial) < self.limit_to_last or not initial:
            return self.model_copy(update={"limit_to_last": None})
        first_key, first_value = initial[0]
        return self.model_copy(update={
            "limit_to_last": None,
            "start_at": self.order_value(first_key, first_value),
            "start_at_key": first_key,
        })


EventKind = Literal["child_added", "child_changed", "child_removed", "value"]


class StoreEvent(BaseModel):
    kind: EventKind
    path: str
    key: Optional[str] = None
    value: Any = None


Listener = Callable[[StoreEvent], None]
ErrorListener = Callable[[BaseException], None]

_subscription_ids = itertools.count(1)


class Subscription:
    """Handle for a live listener. ``release()`` is idempotent."""

    def __init__(
        self,
        store: "RemoteStore",
        path: str,
        kind: Literal["child", "value"],
        callback: Listener,
        query: Optional[Query] = None,
        on_error: Optional[ErrorListener] = None,
    ) -> None:
        self.id = next(_subscription_ids)
        self.path = path
        self.kind = kind
        self.query = query or Query(path=path)
        self._store = store
        self._callback = callback
        self._on_error = on_error
        self._window = self.query
        self._last_children: Dict[str, Any] = {}
        self._last_value: Any = None
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._detach(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    async def _refresh(self, initial: bool = False) -> None:
        raw = await self._store._read(self.path)
        if not self.active:
            return
        if self.kind == "value":
            if initial or raw != self._last_value:
                self._last_value = raw
                self._emit(StoreEvent(kind="value", path=self.path, key=paths.key_of(self.path), value=raw))
            return

        if initial:
            ordered = self.query.apply(raw)
            self._window = self.query.live_window(ordered)
        else:
            ordered = self._window.apply(raw)
        current = dict(ordered)
        previous = self._last_children
        self._last_children = current
        for key, value in previous.items():
            if key not in current:
                self._emit(StoreEvent(kind="child_removed", path=self.path, key=key, value=value))
        for key, value in ordered:
            if key not in previous:
                self._emit(StoreEvent(kind="child_added", path=self.path, key=key, value=value))
            elif previous[key] != value:
                self._emit(StoreEvent(kind="child_changed", path=self.path, key=key, value=value))

    def _emit(self, event: StoreEvent) -> None:
        if not self.active:
            return
        try:
            self._callback(event)
        except Exception:  # noqa: BLE001
            logger.exception("Listener for %s failed on %s", self.path, event.kind)

    def _fail(self, exc: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(exc)
        else:
            logger.warning("Listener for %s failed, keeping cached data: %s", self.path, exc)


class RemoteStore(abc.ABC):
    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self.clock = clock or now_ms
        self._push_ids = PushIdGenerator()
        self._subscriptions: List[Subscription] = []
        self._disconnect_ops: Dict[str, Any] = {}
        self._connected = True

    # Storage primitives

    @abc.abstractmethod
    async def _read(self, path: str) -> Any:
        """Returns a fresh copy of the value at ``path`` or None."""

    @abc.abstractmethod
    async def _write_many(self, changes: Dict[str, Any]) -> None:
        """Applies resolved writes atomically; a None value deletes the node."""

    # Connection

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Store connection %s", "restored" if connected else "lost")
        for sub in list(self._subscriptions):
            if sub.active and sub.path == CONNECTED_PATH:
                sub._emit(StoreEvent(kind="value", path=CONNECTED_PATH, key="connected", value=connected))

    def _ensure_online(self, path: str) -> None:
        if not self._connected:
            raise NetworkUnavailable("Store is unreachable", path=path)

    def now(self) -> int:
        return self.clock()

    # Reads

    async def get(self, path: str) -> Any:
        path = paths.validate_path(path)
        self._ensure_online(path)
        return await self._read(path)

    async def query(self, query: Query) -> List[Tuple[str, Any]]:
        path = paths.validate_path(query.path)
        self._ensure_online(path)
        return query.apply(await self._read(path))

    # Writes

    def push_key(self) -> str:
        return self._push_ids.generate(self.now())

    async def set(self, path: str, value: Any) -> None:
        await self._commit({path: value})

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        """Multi-path update; keys of ``values`` are relative to ``path``."""
        await self._commit({paths.join(path, relative): value for relative, value in values.items()})

    async def push(self, path: str, value: Any = None) -> str:
        key = self.push_key()
        if value is not None:
            await self.set(paths.join(path, key), value)
        return key

    async def remove(self, path: str) -> None:
        await self._commit({path: None})

    async def apply_writes(self, ops: Dict[str, Any]) -> None:
        """Server-side writes (on-disconnect hooks); applied one by one."""
        for path, value in ops.items():
            await self._commit({path: value}, require_online=False)

    async def _commit(self, changes: Dict[str, Any], require_online: bool = True) -> None:
        resolved: Dict[str, Any] = {}
        for raw_path, value in changes.items():
            path = paths.validate_path(raw_path)
            if require_online:
                self._ensure_online(path)
            resolved[path] = await self._resolve(path, value)
        _check_disjoint(resolved)
        await self._write_many(resolved)
        await self._dispatch(resolved)

    async def _resolve(self, path: str, value: Any) -> Any:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
        if isinstance(value, dict):
            if ".sv" in value:
                return await self._server_value(path, value[".sv"])
            resolved = {}
            for key, child in value.items():
                paths.validate_key(key)
                child_value = await self._resolve(paths.join(path, key), child)
                if child_value is not None:
                    resolved[key] = child_value
            return resolved or None
        if isinstance(value, (list, tuple, set)):
            raise ValidationFailed("Arrays are not supported, use keyed maps", path=path)
        return value

    async def _server_value(self, path: str, sentinel: Any) -> Any:
        if sentinel == "timestamp":
            return self.now()
        if isinstance(sentinel, dict) and "increment" in sentinel:
            current = await self._read(path)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                current = 0
            return current + sentinel["increment"]
        raise ValidationFailed(f"Unknown server value {sentinel!r}", path=path)

    # Subscriptions

    async def subscribe(
        self,
        target: Union[str, Query],
        callback: Listener,
        *,
        kind: Literal["child", "value"] = "child",
        on_error: Optional[ErrorListener] = None,
    ) -> Subscription:
        """Delivers the initial snapshot, then incremental events.

        ``child`` subscriptions emit one ``child_added`` per existing child in
        query order; ``value`` subscriptions emit the whole value.
        """
        query = target if isinstance(target, Query) else None
        path = paths.normalize(query.path if query else target)
        if path == CONNECTED_PATH:
            sub = Subscription(self, path, "value", callback, on_error=on_error)
            self._subscriptions.append(sub)
            sub._emit(StoreEvent(kind="value", path=path, key="connected", value=self._connected))
            return sub

        paths.validate_path(path)
        sub = Subscription(self, path, kind, callback, query=query, on_error=on_error)
        self._subscriptions.append(sub)
        try:
            await sub._refresh(initial=True)
        except Exception as exc:  # noqa: BLE001
            sub._fail(exc)
        return sub

    def _detach(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    async def _dispatch(self, changed: Iterable[str]) -> None:
        changed = list(changed)
        for sub in list(self._subscriptions):
            if not sub.active or sub.path == CONNECTED_PATH:
                continue
            if not any(paths.related(sub.path, path) for path in changed):
                continue
            try:
                await sub._refresh()
            except Exception as exc:  # noqa: BLE001
                sub._fail(exc)

    # On-disconnect hooks

    def on_disconnect(self, path: str, value: Any = None) -> None:
        """Registers a write the server applies when this client drops."""
        self._disconnect_ops[paths.validate_path(path)] = value

    def cancel_on_disconnect(self, path: str) -> None:
        self._disconnect_ops.pop(paths.normalize(path), None)

    @property
    def pending_disconnect_ops(self) -> Dict[str, Any]:
        return dict(self._disconnect_ops)

    async def run_disconnect_hooks(self) -> None:
        ops, self._disconnect_ops = self._disconnect_ops, {}
        if ops:
            logger.info("Applying %d on-disconnect writes", len(ops))
            await self.apply_writes(ops)


def _check_disjoint(changes: Dict[str, Any]) -> None:
    keys = list(changes)
    for index, current in enumerate(keys):
        for other in keys[index + 1:]:
            if paths.related(current, other):
                raise ValidationFailed(f"Overlapping update paths {current!r} and {other!r}", path=current)
