import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatsync.core.security import create_access_token
from chatsync.main import create_app
from chatsync.store.memory import InMemoryStore
from chatsync.websockets.store_ws import StoreConnection


@pytest.fixture
def api_store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def client(api_store):
    with TestClient(create_app(api_store)) as test_client:
        yield test_client


def auth(uid="alice"):
    return {"Authorization": f"Bearer {create_access_token(uid)}"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_requires_token(client):
    assert client.get("/store/users").status_code == 401
    assert client.get("/store/users", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_put_get_patch_delete(client, clock):
    resp = client.put("/store/users/alice", json={"displayName": "Alice", "lastSeen": {".sv": "timestamp"}}, headers=auth())
    assert resp.status_code == 200
    assert resp.json() == {"displayName": "Alice", "lastSeen": clock.now}

    resp = client.patch("/api/v1/store/", json={
        "chats/c1/lastMessage": {"content": "hi"},
        "messages/c1/m1": {"content": "hi", "timestamp": 1},
    }, headers=auth())
    assert resp.json() == {"updated": 2}
    assert client.get("/store/chats/c1/lastMessage/content", headers=auth()).json() == "hi"

    assert client.delete("/store/chats/c1", headers=auth()).status_code == 204
    assert client.get("/store/chats/c1", headers=auth()).json() is None


def test_push_and_query(client):
    keys = []
    for ts in (300, 100, 200):
        resp = client.post("/store/messages/c1", json={"content": str(ts), "timestamp": ts}, headers=auth())
        assert resp.status_code == 201
        keys.append(resp.json()["name"])
    assert keys == sorted(keys)

    resp = client.get(
        "/store/messages/c1",
        params={"orderBy": "timestamp", "endBefore": "300", "limitToLast": 5},
        headers=auth(),
    )
    children = resp.json()["children"]
    assert [child["value"]["timestamp"] for child in children] == [100, 200]


def test_errors_map_to_status_codes(client, api_store):
    assert client.put("/store/users/bob/bio", json="mine now", headers=auth()).status_code == 403
    resp = client.put("/store/chats/c1/tags", json=["a", "b"], headers=auth())
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_failed"

    api_store.set_connected(False)
    assert client.get("/store/users", headers=auth()).status_code == 503


def test_socket_rejects_bad_token(client):
    with client.websocket_connect("/ws/store") as ws:
        ws.send_json({"token": "garbage"})
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 4403


def test_socket_streams_child_events(client):
    client.put("/store/messages/c1/m1", json={"content": "old", "timestamp": 1}, headers=auth())
    with client.websocket_connect("/ws/store") as ws:
        ws.send_json({"token": create_access_token("bob")})
        assert ws.receive_json() == {"type": "ready", "uid": "bob"}

        ws.send_json({"op": "subscribe", "id": 7, "path": "messages/c1", "orderBy": "timestamp", "limitToLast": 10})
        assert ws.receive_json() == {"type": "subscribed", "id": 7}
        initial = ws.receive_json()
        assert (initial["event"], initial["key"], initial["sub"]) == ("child_added", "m1", 7)

        client.put("/store/messages/c1/m2", json={"content": "new", "timestamp": 2}, headers=auth())
        event = ws.receive_json()
        assert (event["event"], event["key"], event["value"]["content"]) == ("child_added", "m2", "new")

        ws.send_json({"op": "unsubscribe", "id": 7})
        assert ws.receive_json() == {"type": "unsubscribed", "id": 7}


def test_socket_disconnect_hooks_run_on_close(client, api_store):
    client.put("/store/users/bob", json={"online": True}, headers=auth("bob"))
    with client.websocket_connect("/ws/store") as ws:
        ws.send_json({"token": create_access_token("bob")})
        ws.receive_json()
        ws.send_json({"op": "onDisconnect", "id": 1, "path": "users/bob/online", "value": False})
        assert ws.receive_json() == {"type": "ok", "id": 1}
        ws.send_json({"op": "onDisconnect", "id": 2, "path": "users/alice/online", "value": False})
        assert ws.receive_json()["code"] == "permission_denied"
    assert client.get("/store/users/bob/online", headers=auth("bob")).json() is False


def test_socket_reports_malformed_frames(client):
    with client.websocket_connect("/ws/store") as ws:
        ws.send_json({"token": create_access_token("bob")})
        ws.receive_json()
        ws.send_json({"op": "explode"})
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"op": "subscribe", "id": 3})
        assert ws.receive_json()["code"] == "validation_failed"


@pytest.mark.anyio
async def test_slow_socket_drops_its_subscriptions(api_store):
    connection = StoreConnection(None, "bob", queue_limit=2)
    connection.subscriptions[1] = await api_store.subscribe("messages/c1", connection.forwarder(1))
    for n in range(3):
        await api_store.set(f"messages/c1/m{n}", {"content": str(n)})

    assert connection.subscriptions == {}
    assert api_store.listener_count == 0
    assert connection._outgoing.get_nowait()["code"] == "overflow"
    assert connection._outgoing.empty()
