import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from chatsync.core.dependencies import get_store, require_auth
from chatsync.core.security import check_write
from chatsync.schemas.store import ChildEntry, PushResponse, QueryResponse
from chatsync.store import paths
from chatsync.store.base import Query as StoreQuery
from chatsync.store.base import RemoteStore

router = APIRouter()


def _bound(raw: Optional[str]) -> Any:
    """Query bounds arrive as JSON literals; bare words are strings."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


@router.get("/{path:path}")
async def read_path(
    path: str,
    orderBy: Optional[str] = Query(None),
    startAt: Optional[str] = Query(None),
    endBefore: Optional[str] = Query(None),
    limitToFirst: Optional[int] = Query(None, ge=0),
    limitToLast: Optional[int] = Query(None, ge=0),
    store: RemoteStore = Depends(get_store),
    uid: str = Depends(require_auth),
):
    """Value at ``path``, or an ordered child list when query params are given"""
    if all(param is None for param in (orderBy, startAt, endBefore, limitToFirst, limitToLast)):
        return await store.get(path)

    order_by = None if orderBy in (None, "$key") else orderBy
    query = StoreQuery(
        path=path,
        order_by=order_by,
        start_at=_bound(startAt),
        end_before=_bound(endBefore),
        limit_to_first=limitToFirst,
        limit_to_last=limitToLast,
    )
    rows = await store.query(query)
    return QueryResponse(children=[ChildEntry(key=key, value=value) for key, value in rows])


@router.put("/{path:path}")
async def set_path(
    path: str,
    value: Any = Body(None),
    store: RemoteStore = Depends(get_store),
    uid: str = Depends(require_auth),
):
    check_write(uid, path)
    await store.set(path, value)
    return await store.get(path)


@router.patch("/{path:path}")
async def update_path(
    path: str,
    values: Dict[str, Any] = Body(...),
    store: RemoteStore = Depends(get_store),
    uid: str = Depends(require_auth),
):
    """Multi-path update; keys are relative to ``path``"""
    for relative in values:
        check_write(uid, paths.join(path, relative))
    await store.update(path, values)
    return {"updated": len(values)}


@router.post("/{path:path}", response_model=PushResponse, status_code=status.HTTP_201_CREATED)
async def push_child(
    path: str,
    value: Any = Body(None),
    store: RemoteStore = Depends(get_store),
    uid: str = Depends(require_auth),
):
    check_write(uid, paths.join(path, "child"))
    key = await store.push(path, value)
    return PushResponse(name=key)


@router.delete("/{path:path}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_path(
    path: str,
    store: RemoteStore = Depends(get_store),
    uid: str = Depends(require_auth),
):
    check_write(uid, path)
    await store.remove(path)
