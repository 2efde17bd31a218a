from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Optional

from chatsync.store import paths
from chatsync.store.base import RemoteStore


class InMemoryStore(RemoteStore):
    """Process-local store, used by tests and single-process tooling.

    ``drop_connection`` behaves like the server noticing a lost client: the
    registered on-disconnect writes are applied and the connection flag goes
    down. ``restore_connection`` brings it back.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None, clock: Optional[Callable[[], int]] = None) -> None:
        super().__init__(clock=clock)
        self._root: Dict[str, Any] = copy.deepcopy(data) if data else {}

    async def _read(self, path: str) -> Any:
        node: Any = self._root
        for segment in paths.split(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return copy.deepcopy(node)

    async def _write_many(self, changes: Dict[str, Any]) -> None:
        for path, value in changes.items():
            self._write(path, value)

    def _write(self, path: str, value: Any) -> None:
        segments = paths.split(path)
        if not segments:
            self._root = copy.deepcopy(value) if isinstance(value, dict) else {}
            return

        node = self._root
        trail = []
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[segment] = child
            trail.append((node, segment))
            node = child

        if value is None:
            node.pop(segments[-1], None)
        else:
            node[segments[-1]] = copy.deepcopy(value)

        # Empty parents disappear, as in the hosted store
        while trail and not node:
            parent, segment = trail.pop()
            parent.pop(segment, None)
            node = parent

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._root)

    async def drop_connection(self) -> None:
        await self.run_disconnect_hooks()
        self.set_connected(False)

    def restore_connection(self) -> None:
        self.set_connected(True)
