from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ChildEntry(BaseModel):
    key: str
    value: Any = None


class QueryResponse(BaseModel):
    children: List[ChildEntry]


class PushResponse(BaseModel):
    name: str


class SocketFrame(BaseModel):
    """Client → server frame on the store socket."""

    op: Literal["subscribe", "unsubscribe", "onDisconnect", "cancelOnDisconnect"]
    id: Optional[int] = None
    path: Optional[str] = None
    kind: Literal["child", "value"] = "child"
    value: Any = None
    order_by: Optional[str] = Field(default=None, alias="orderBy")
    start_at: Any = Field(default=None, alias="startAt")
    end_before: Any = Field(default=None, alias="endBefore")
    limit_to_first: Optional[int] = Field(default=None, alias="limitToFirst")
    limit_to_last: Optional[int] = Field(default=None, alias="limitToLast")

    model_config = {
        "populate_by_name": True,
    }


def event_frame(sub_id: int, event: str, key: Optional[str], value: Any) -> Dict[str, Any]:
    return {"type": "event", "sub": sub_id, "event": event, "key": key, "value": value}
