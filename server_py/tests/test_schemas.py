import pytest
from pydantic import ValidationError

from chatsync.schemas.chat import GroupChat, PrivateChat, parse_chat, private_chat_id
from chatsync.schemas.message import (
    AnnouncementMessage,
    PollMessage,
    TextMessage,
    VoiceMessage,
    file_category,
    parse_message,
    unread_kind,
)
from chatsync.schemas.user import Presence, UserProfile, UserStatus, presence_for


def test_legacy_records_parse_as_text():
    message = parse_message("m1", {"sender": "alice", "content": "hi", "timestamp": 5}, "c1")
    assert isinstance(message, TextMessage)
    assert (message.id, message.chat_id) == ("m1", "c1")


def test_message_variants():
    poll = parse_message("p1", {
        "type": "poll",
        "sender": "alice",
        "question": "Lunch?",
        "options": {"b": {"text": "Sushi", "votes": {"x": True}}, "a": {"text": "Pizza"}},
    })
    assert isinstance(poll, PollMessage)
    assert [option.text for _, option in poll.ordered_options()] == ["Pizza", "Sushi"]
    assert poll.voted_option("x") == "b"
    assert unread_kind(poll) == "polls"

    voice = parse_message("v1", {"type": "voice", "sender": "bob", "duration": 75.2, "audioData": "AAA"})
    assert isinstance(voice, VoiceMessage)
    assert voice.body == "Voice message (1:15)"

    announcement = parse_message("a1", {"type": "announcement", "sender": "bob", "content": "Heads up"})
    assert isinstance(announcement, AnnouncementMessage)
    assert unread_kind(announcement) == "announcements"

    with pytest.raises(ValidationError):
        parse_message("x", {"type": "sticker", "sender": "bob"})


def test_record_uses_camel_case_without_ids():
    message = TextMessage(id="m1", chat_id="c1", sender="alice", content="hi", client_id="c-1", reply_to="m0")
    record = message.to_record()
    assert record["clientId"] == "c-1"
    assert record["replyTo"] == "m0"
    assert "id" not in record and "chatId" not in record


def test_file_categories():
    assert file_category("image/png") == "image"
    assert file_category("application/pdf") == "pdf"
    assert file_category("application/vnd.openxmlformats-officedocument.wordprocessingml.document") == "document"
    assert file_category("application/vnd.ms-excel") == "spreadsheet"
    assert file_category("application/zip") == "file"


def test_chats():
    assert private_chat_id("zed", "amy") == "amy_zed"
    chat = parse_chat("amy_zed", {"type": "private", "participants": {"amy": True, "zed": True}})
    assert isinstance(chat, PrivateChat)
    assert chat.other_participant("amy") == "zed"

    with pytest.raises(ValidationError):
        PrivateChat(participants={"amy": True})

    group = parse_chat("g1", {
        "type": "group",
        "name": "G",
        "createdBy": "amy",
        "admins": {"amy": True, "old": False},
        "members": {"amy": {"role": "admin"}, "zed": {}},
    })
    assert isinstance(group, GroupChat)
    assert group.admin_ids == ["amy"]
    assert group.is_admin("amy") and not group.is_admin("old")


def test_user_profile():
    profile = UserProfile.model_validate({"uid": "u1", "photoURL": "http://x/p.png", "blocked": {"u2": True}})
    assert profile.photo_url == "http://x/p.png"
    assert profile.has_blocked("u2")
    assert profile.name == "u1"
    assert profile.to_store()["photoURL"] == "http://x/p.png"
    with pytest.raises(ValidationError):
        UserProfile(uid="u1", bio="x" * 200)


@pytest.mark.parametrize("status, presence", [
    (UserStatus.AVAILABLE, Presence.ONLINE),
    (UserStatus.AWAY, Presence.AWAY),
    (UserStatus.DO_NOT_DISTURB, Presence.BUSY),
    (UserStatus.IN_A_MEETING, Presence.BUSY),
    (UserStatus.OFFLINE, Presence.OFFLINE),
])
def test_presence_for(status, presence):
    assert presence_for(status) == presence
