import pytest

from chatsync.core.errors import NetworkUnavailable, ValidationFailed
from chatsync.store.base import SERVER_TIMESTAMP, Query, increment
from chatsync.store.paths import CONNECTED_PATH

pytestmark = pytest.mark.anyio


async def test_set_get_and_server_timestamp(store, clock):
    await store.set("users/alice", {"displayName": "Alice", "lastSeen": SERVER_TIMESTAMP})
    assert await store.get("users/alice") == {"displayName": "Alice", "lastSeen": clock.now}
    assert await store.get("users/alice/displayName") == "Alice"
    assert await store.get("users/nobody") is None


async def test_reads_are_copies(store):
    await store.set("a", {"b": 1})
    value = await store.get("a")
    value["b"] = 2
    assert await store.get("a/b") == 1


async def test_multi_path_update_is_one_write(store):
    events = []
    await store.subscribe("chats", events.append)
    await store.update("", {
        "messages/c1/m1": {"content": "hi", "timestamp": SERVER_TIMESTAMP},
        "chats/c1/lastMessage": {"content": "hi"},
    })
    assert await store.get("messages/c1/m1/content") == "hi"
    assert [event.kind for event in events] == ["child_added"]


async def test_overlapping_update_paths_rejected(store):
    with pytest.raises(ValidationFailed):
        await store.update("chats/c1", {"lastMessage": {"content": "x"}, "lastMessage/content": "y"})


async def test_increment(store):
    await store.set("chats/g/memberCount", 2)
    await store.update("chats/g", {"memberCount": increment(1)})
    assert await store.get("chats/g/memberCount") == 3
    await store.set("chats/other/memberCount", increment(-1))
    assert await store.get("chats/other/memberCount") == -1


async def test_remove_prunes_empty_parents(store):
    await store.set("typing/c1/alice", {"timestamp": 1})
    await store.remove("typing/c1/alice")
    assert store.snapshot() == {}


async def test_null_children_are_dropped(store):
    await store.set("users/alice", {"bio": None, "displayName": "Alice", "blocked": {}})
    assert await store.get("users/alice") == {"displayName": "Alice"}


async def test_lists_rejected(store):
    with pytest.raises(ValidationFailed):
        await store.set("chats/c1/tags", ["a", "b"])


async def test_invalid_key_rejected(store):
    with pytest.raises(ValidationFailed):
        await store.set("users/a.b", 1)


async def test_ordered_query(store):
    await store.set("messages/c1", {
        "m3": {"timestamp": 300},
        "m1": {"timestamp": 100},
        "m2": {"timestamp": 200},
        "m0": {"timestamp": 100},
    })
    rows = await store.query(Query(path="messages/c1", order_by="timestamp", limit_to_last=2))
    assert [key for key, _ in rows] == ["m2", "m3"]

    rows = await store.query(Query(path="messages/c1", order_by="timestamp", end_before=100, end_before_key="m1"))
    assert [key for key, _ in rows] == ["m0"]

    rows = await store.query(Query(path="messages/c1", order_by="timestamp", start_at=200))
    assert [key for key, _ in rows] == ["m2", "m3"]

    rows = await store.query(Query(path="messages/c1", limit_to_first=1))
    assert [key for key, _ in rows] == ["m0"]


async def test_child_subscription_events(store):
    await store.set("messages/c1/m1", {"content": "one", "timestamp": 1})
    events = []
    sub = await store.subscribe(Query(path="messages/c1", order_by="timestamp"), events.append)
    assert [(e.kind, e.key) for e in events] == [("child_added", "m1")]

    await store.set("messages/c1/m2", {"content": "two", "timestamp": 2})
    await store.set("messages/c1/m1/content", "edited")
    await store.remove("messages/c1/m2")
    assert [(e.kind, e.key) for e in events[1:]] == [
        ("child_added", "m2"),
        ("child_changed", "m1"),
        ("child_removed", "m2"),
    ]

    sub.release()
    sub.release()
    await store.set("messages/c1/m3", {"content": "three", "timestamp": 3})
    assert len(events) == 4
    assert store.listener_count == 0


async def test_limit_to_last_window_keeps_older_children(store):
    for index in range(3):
        await store.set(f"messages/c1/m{index}", {"timestamp": index})
    events = []
    await store.subscribe(Query(path="messages/c1", order_by="timestamp", limit_to_last=2), events.append)
    assert [e.key for e in events] == ["m1", "m2"]

    await store.set("messages/c1/m3", {"timestamp": 3})
    assert [(e.kind, e.key) for e in events[2:]] == [("child_added", "m3")]


async def test_value_subscription(store):
    values = []
    with await store.subscribe("users/alice/status", lambda e: values.append(e.value), kind="value"):
        await store.set("users/alice/status", "Away")
        await store.set("users/alice/bio", "unrelated sibling")
    await store.set("users/alice/status", "Available")
    assert values == [None, "Away"]


async def test_failing_listener_does_not_break_writes(store):
    def explode(event):
        raise RuntimeError("boom")

    await store.subscribe("chats", explode)
    await store.set("chats/c1/name", "ok")
    assert await store.get("chats/c1/name") == "ok"


async def test_offline_reads_and_writes_fail(store):
    await store.drop_connection()
    with pytest.raises(NetworkUnavailable):
        await store.get("users")
    with pytest.raises(NetworkUnavailable):
        await store.set("users/alice/status", "Away")
    store.restore_connection()
    assert await store.get("users") is None


async def test_connected_status_and_disconnect_hooks(store):
    states = []
    await store.subscribe(CONNECTED_PATH, lambda e: states.append(e.value))
    await store.set("users/alice/online", True)
    store.on_disconnect("users/alice/online", False)
    store.on_disconnect("typing/c1/alice", None)
    store.on_disconnect("typing/c1/bob", None)
    store.cancel_on_disconnect("typing/c1/bob")
    assert set(store.pending_disconnect_ops) == {"users/alice/online", "typing/c1/alice"}

    await store.drop_connection()
    store.restore_connection()
    assert states == [True, False, True]
    assert await store.get("users/alice/online") is False
    assert store.pending_disconnect_ops == {}
