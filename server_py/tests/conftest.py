import pytest

from chatsync.services.chat import ChatService
from chatsync.store.memory import InMemoryStore

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def chat_service(store):
    return ChatService(store)


@pytest.fixture
def seeded(store):
    """Two users with a private chat and a group chat."""
    store._root.update({
        "users": {
            "alice": {"uid": "alice", "displayName": "Alice", "status": "Available"},
            "bob": {"uid": "bob", "displayName": "Bob", "status": "Away"},
            "carol": {"uid": "carol", "displayName": "Carol"},
        },
        "chats": {
            "alice_bob": {"type": "private", "participants": {"alice": True, "bob": True}},
            "team": {
                "type": "group",
                "name": "Team",
                "createdBy": "alice",
                "admins": {"alice": True},
                "members": {
                    "alice": {"role": "admin"},
                    "bob": {"role": "member"},
                },
                "memberCount": 2,
            },
        },
        "userChats": {
            "alice": {"alice_bob": {"role": "member"}, "team": {"role": "admin"}},
            "bob": {"alice_bob": {"role": "member"}, "team": {"role": "member"}},
        },
    })
    return store


def message_record(sender: str, content: str, timestamp: int, **extra):
    record = {"type": "text", "sender": sender, "content": content, "timestamp": timestamp}
    record.update(extra)
    return record
