from datetime import date

import pytest

from chatsync.core.errors import NotFound, ValidationFailed
from chatsync.schemas.message import FileMessage, TextMessage
from chatsync.schemas.user import UserStatus
from chatsync.services.search import search_messages
from chatsync.services.users import UserService

pytestmark = pytest.mark.anyio


async def test_ensure_user_record_creates_then_fills_gaps(store, clock):
    users = UserService(store)
    profile = await users.ensure_user_record("dave", email="dave@example.com")
    assert profile.name == "dave@example.com"
    assert profile.created_at == clock.now
    assert profile.status == UserStatus.AVAILABLE

    profile = await users.ensure_user_record("dave", display_name="Dave", email="other@example.com")
    assert profile.display_name == "Dave"
    assert profile.email == "dave@example.com"


async def test_update_profile(store):
    users = UserService(store)
    await users.ensure_user_record("dave", display_name="Dave")
    profile = await users.update_profile("dave", bio="Hiking", status="In a meeting")
    assert profile.bio == "Hiking"
    assert profile.presence.value == "busy"
    assert profile.last_active_status == UserStatus.IN_A_MEETING

    with pytest.raises(ValidationFailed):
        await users.update_profile("dave", bio="x" * 161)
    with pytest.raises(ValidationFailed):
        await users.update_profile("dave", status="Sleeping")
    with pytest.raises(NotFound):
        await users.get_user("nobody")


async def test_block_and_unblock(store):
    users = UserService(store)
    await users.block_user("alice", "bob")
    assert await users.is_blocked("alice", "bob")
    assert not await users.is_blocked("bob", "alice")
    await users.unblock_user("alice", "bob")
    assert not await users.is_blocked("alice", "bob")
    with pytest.raises(ValidationFailed):
        await users.block_user("alice", "alice")


# 2023-11-14 22:13:20 UTC
DAY_MS = 1_700_000_000_000


def loaded_messages():
    return [
        TextMessage(id="m1", sender="alice", content="Project kickoff at noon", timestamp=DAY_MS),
        TextMessage(id="m2", sender="bob", content="See you at the PROJECT sync", timestamp=DAY_MS + 86_400_000),
        FileMessage(id="m3", sender="bob", file_name="project-plan.pdf", file_type="application/pdf", file_size=1, timestamp=DAY_MS),
        TextMessage(id="m4", sender="bob", content="project secret", timestamp=DAY_MS, deleted=True),
    ]


def test_search_is_case_insensitive():
    assert [m.id for m in search_messages(loaded_messages(), "project")] == ["m1", "m2", "m3"]


def test_search_filters_combine():
    messages = loaded_messages()
    assert [m.id for m in search_messages(messages, "project", sender="bob")] == ["m2", "m3"]
    assert [m.id for m in search_messages(messages, sender="bob", content_type="file")] == ["m3"]
    assert [m.id for m in search_messages(messages, on_date=date(2023, 11, 14))] == ["m1", "m3"]
    assert search_messages(messages, "nothing like this") == []


def test_search_shows_deleted_only_to_sender():
    messages = loaded_messages()
    assert [m.id for m in search_messages(messages, "secret", viewer="bob")] == ["m4"]
    assert search_messages(messages, "secret", viewer="alice") == []
