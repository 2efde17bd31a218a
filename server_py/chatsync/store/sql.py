from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatsync.models.store_node import StoreNode
from chatsync.store import paths
from chatsync.store.base import RemoteStore


def flatten(path: str, value: Any) -> List[Tuple[str, Any]]:
    if isinstance(value, dict):
        leaves: List[Tuple[str, Any]] = []
        for key, child in value.items():
            leaves.extend(flatten(paths.join(path, key), child))
        return leaves
    return [(path, value)]


def unflatten(base: str, rows: Iterable[Sequence[Any]]) -> Any:
    root: Dict[str, Any] = {}
    found = False
    for path, value in rows:
        found = True
        if path == base:
            return value
        node = root
        segments = paths.split(paths.relative(path, base))
        for segment in segments[:-1]:
            node = node.setdefault(segment, {})
        node[segments[-1]] = value
    return root if found else None


def _subtree(path: str):
    if not path:
        return StoreNode.path.isnot(None)
    return or_(StoreNode.path == path, StoreNode.path.startswith(path + "/", autoescape=True))


def _ancestors(path: str) -> List[str]:
    segments = paths.split(path)
    return ["/".join(segments[:i]) for i in range(1, len(segments))]


class SqlStore(RemoteStore):
    """Store tree persisted as one row per leaf.

    Backs the emulator service; fan-out to listeners stays in-process.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession], clock: Optional[Callable[[], int]] = None) -> None:
        super().__init__(clock=clock)
        self._session_factory = session_factory

    async def _read(self, path: str) -> Any:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StoreNode.path, StoreNode.value).where(_subtree(path)).order_by(StoreNode.path)
            )
            return unflatten(path, result.all())

    async def _write_many(self, changes: Dict[str, Any]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                for path, value in changes.items():
                    await session.execute(
                        delete(StoreNode).where(_subtree(path)).execution_options(synchronize_session=False)
                    )
                    if value is None:
                        continue
                    ancestors = _ancestors(path)
                    if ancestors:
                        # a scalar ancestor is replaced by the new subtree
                        await session.execute(
                            delete(StoreNode)
                            .where(StoreNode.path.in_(ancestors))
                            .execution_options(synchronize_session=False)
                        )
                    rows = [{"path": leaf_path, "value": leaf} for leaf_path, leaf in flatten(path, value)]
                    await session.execute(insert(StoreNode), rows)
