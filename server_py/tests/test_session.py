import asyncio
from unittest import mock

import pytest

from chatsync.core.errors import AlreadyVoted, ValidationFailed
from chatsync.schemas.message import PollMessage
from chatsync.services.presence import TypingBridge
from chatsync.services.reconciler import DeliveryStatus, is_temp_id
from chatsync.services.session import ChatSessionManager

from conftest import message_record

pytestmark = pytest.mark.anyio


@pytest.fixture
def session(seeded):
    return ChatSessionManager(seeded, "alice", "Alice", page_size=3, retry_delay=0, typing_debounce=0.05)


async def seed_messages(store, chat_id, count, sender="bob", start=1):
    await store.set(f"messages/{chat_id}", {
        f"m{n}": message_record(sender, f"message {n}", n) for n in range(start, start + count)
    })


async def test_select_chat_shows_newest_page(seeded, session):
    await seed_messages(seeded, "team", 5)
    await session.select_chat("team")
    assert [entry.id for entry in session.messages] == ["m3", "m4", "m5"]

    result = await session.load_older(3)
    assert [m.id for m in result.messages] == ["m1", "m2"]
    assert result.has_more is False
    assert [entry.id for entry in session.messages] == ["m1", "m2", "m3", "m4", "m5"]


async def test_send_text_ends_as_one_confirmed_message(seeded, session, clock):
    await session.select_chat("team")
    temp_id = await session.send_text("hello")

    assert is_temp_id(temp_id)
    [entry] = session.messages
    assert entry.status == DeliveryStatus.SENT
    assert not is_temp_id(entry.id)
    assert entry.message.content == "hello"
    assert await seeded.get("chats/team/lastMessage/content") == "hello"
    assert await seeded.get("userChats/alice/team/lastRead") == clock.now


async def test_empty_message_is_rejected_locally(session):
    await session.select_chat("team")
    with pytest.raises(ValidationFailed):
        await session.send_text("   ")
    assert session.messages == []
    assert len(session.outbox) == 0


async def test_sending_requires_a_selected_chat(session):
    with pytest.raises(ValidationFailed):
        await session.send_text("hello")


async def test_offline_sends_flush_on_reconnect(seeded, session):
    await session.start(presence=False)
    await session.select_chat("team")
    await seeded.drop_connection()

    await session.send_text("first")
    await session.send_text("second")
    assert [entry.status for entry in session.messages] == [DeliveryStatus.PENDING] * 2
    assert len(session.outbox) == 2

    seeded.restore_connection()
    await session.connection.wait_idle()

    assert [entry.message.content for entry in session.messages] == ["first", "second"]
    assert all(entry.status == DeliveryStatus.SENT for entry in session.messages)
    assert len(session.outbox) == 0
    await session.close()


async def test_permanent_failure_blocks_queue_until_retry(seeded, session):
    await seeded.set("users/bob/blocked/alice", True)
    await session.select_chat("alice_bob")

    failed_id = await session.send_text("are you there?")
    queued_id = await session.send_text("hello?")

    failed = session.reconciler.get(failed_id)
    assert failed.status == DeliveryStatus.FAILED
    assert session.reconciler.get(queued_id).status == DeliveryStatus.PENDING
    assert session.outbox.blocked
    assert session.notifier.notices[-1].level == "error"
    assert await seeded.get("messages/alice_bob") is None

    await seeded.remove("users/bob/blocked/alice")
    assert await session.retry(failed_id)

    assert [entry.message.content for entry in session.messages] == ["are you there?", "hello?"]
    assert all(entry.status == DeliveryStatus.SENT for entry in session.messages)


async def test_discarding_failed_head_unblocks_later_sends(seeded, session):
    await seeded.set("users/bob/blocked/alice", True)
    await session.select_chat("alice_bob")
    failed_id = await session.send_text("one")
    await session.send_text("two")
    await seeded.remove("users/bob/blocked/alice")

    assert await session.discard(failed_id)

    assert [entry.message.content for entry in session.messages] == ["two"]
    assert session.messages[0].status == DeliveryStatus.SENT


async def test_switching_chats_releases_old_listeners(seeded, session):
    await session.select_chat("team")
    per_chat = seeded.listener_count
    await session.select_chat("alice_bob")
    assert seeded.listener_count == per_chat

    await seed_messages(seeded, "team", 2)
    assert session.messages == []

    await session.close()
    assert seeded.listener_count == 0


async def test_viewport_marks_chat_read(seeded, session, clock):
    await seed_messages(seeded, "team", 2)
    await seeded.set("userChats/alice/team/unreadMessages", 2)
    await seeded.set("userChats/alice/alice_bob/unreadMessages", 7)
    await session.select_chat("team")

    assert await session.viewport(at_bottom=False) == 0
    assert await seeded.get("messages/team/m1/readBy") is None

    assert await session.viewport(at_bottom=True) == 2
    assert await seeded.get("messages/team/m1/readBy/alice") == clock.now
    entry = await seeded.get("userChats/alice/team")
    assert entry["lastRead"] == clock.now
    assert entry["unreadMessages"] == 0
    assert await seeded.get("userChats/alice/alice_bob/unreadMessages") == 7
    assert session.messages[0].message.is_read_by("alice")

    # everything visible is already marked
    assert await session.viewport(at_bottom=True) == 0


async def test_listener_failure_keeps_cached_messages(seeded, session):
    await seed_messages(seeded, "team", 2)
    await session.select_chat("team")
    with mock.patch.object(seeded, "_read", side_effect=RuntimeError("backend down")):
        await seeded.set("messages/team/m9", message_record("bob", "lost", 9))
    assert [entry.id for entry in session.messages] == ["m1", "m2"]
    assert session.notifier.notices[-1].level == "warning"


async def test_load_older_failure_is_reported(seeded, session):
    await seed_messages(seeded, "team", 5)
    await session.select_chat("team")
    await seeded.drop_connection()

    result = await session.load_older()
    assert result.messages == []
    assert result.has_more is True
    assert len(session.messages) == 3
    assert "offline" in session.notifier.notices[-1].text


async def test_typing_summary_for_selected_chat(seeded, session):
    await session.select_chat("team")
    bob = TypingBridge(seeded, "team", "bob", "Bob", debounce=0.05)
    await bob.keystroke()
    assert session.typing_summary() == "Bob is typing..."

    await session.typing()
    assert await seeded.get("typing/team/alice/displayName") == "Alice"
    await session.stop_typing()
    assert await seeded.get("typing/team/alice") is None

    await asyncio.sleep(0.15)
    assert session.typing_summary() is None


async def test_poll_vote_through_session(seeded, session):
    await session.select_chat("team")
    await session.create_poll("Lunch?", ["Pizza", "Sushi"])
    [entry] = session.messages
    poll = entry.message
    assert isinstance(poll, PollMessage)
    (first, _), (second, _) = poll.ordered_options()

    state = await session.vote(poll.id, first)
    assert state.status == "voted"
    with pytest.raises(AlreadyVoted):
        await session.vote(poll.id, second)
    assert session.messages[0].message.total_votes == 1


async def test_edit_and_delete_through_session(seeded, session):
    await session.select_chat("team")
    await session.send_text("typo")
    message_id = session.messages[0].id

    await session.edit_message(message_id, "fixed")
    assert session.messages[0].message.content == "fixed"
    assert session.messages[0].message.edited

    await session.delete_message(message_id)
    assert session.messages[0].message.deleted


async def test_unread_watch_counts_other_chats(seeded, session, clock):
    await session.select_chat("team")
    await session.watch_chats()
    clock.advance(10)
    await seeded.set("messages/alice_bob/x1", message_record("bob", "ping", clock.now))
    await seeded.set("messages/team/x2", message_record("bob", "in focus", clock.now))

    assert session.unread_counters("alice_bob").messages == 1
    assert session.unread_counters("team").total == 0


async def test_context_manager_tracks_presence(seeded):
    async with ChatSessionManager(seeded, "bob", "Bob") as session:
        user = await seeded.get("users/bob")
        assert user["online"] is True
        assert user["status"] == "Away"
        assert session.connection.connected

    user = await seeded.get("users/bob")
    assert user["online"] is False
    assert user["status"] == "Offline"
    assert user["lastActiveStatus"] == "Away"
    assert seeded.listener_count == 0


async def test_leaving_a_watched_chat_keeps_counting_it(seeded, session, clock):
    await session.select_chat("team")
    await session.watch_chats()
    await seeded.set("messages/team/x0", message_record("bob", "unread while open", clock.now))

    await session.select_chat("alice_bob")
    assert session.unread_counters("team").messages == 1

    clock.advance(10)
    await seeded.set("messages/team/x1", message_record("bob", "while away", clock.now))
    assert session.unread_counters("team").messages == 2

    await session.select_chat("team")
    await session.viewport(at_bottom=True)
    assert session.unread_counters("team").total == 0


async def test_failed_send_survives_switching_chats(seeded, session):
    await seeded.set("users/bob/blocked/alice", True)
    await session.select_chat("alice_bob")
    failed_id = await session.send_text("are you there?")

    await session.select_chat("team")
    await session.send_text("hi team")
    assert [(entry.message.content, entry.status) for entry in session.messages] == [
        ("hi team", DeliveryStatus.SENT),
    ]

    await session.select_chat("alice_bob")
    [entry] = session.messages
    assert entry.id == failed_id
    assert entry.status == DeliveryStatus.FAILED

    await seeded.remove("users/bob/blocked/alice")
    assert await session.retry(failed_id)
    assert [(entry.message.content, entry.status) for entry in session.messages] == [
        ("are you there?", DeliveryStatus.SENT),
    ]
    assert len(session.outbox) == 0


async def test_older_pages_keep_receiving_updates(seeded, session):
    await seed_messages(seeded, "team", 5)
    await session.select_chat("team")
    listeners = seeded.listener_count
    await session.load_older(3)
    assert seeded.listener_count == listeners

    assert await session.viewport(at_bottom=True) == 5
    assert await session.viewport(at_bottom=True) == 0

    await seeded.set("messages/team/m1/deleted", True)
    assert session.reconciler.get("m1").message.deleted
    assert session.messages[0].message.visible_body("carol") == "This message was deleted"
