from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel

from chatsync.core.errors import AlreadyVoted, NotFound, ValidationFailed
from chatsync.schemas.message import PollMessage, parse_message
from chatsync.store.base import RemoteStore
from chatsync.store.paths import join, message_path

logger = logging.getLogger(__name__)


class PollState(BaseModel):
    status: Literal["open", "voted"] = "open"
    option_id: Optional[str] = None


def poll_state(poll: PollMessage, uid: str) -> PollState:
    option_id = poll.voted_option(uid)
    if option_id is None:
        return PollState()
    return PollState(status="voted", option_id=option_id)


class PollVoting:
    """One vote per user per poll; a vote is never moved or withdrawn."""

    def __init__(self, store: RemoteStore) -> None:
        self.store = store

    async def load(self, chat_id: str, message_id: str) -> PollMessage:
        data = await self.store.get(message_path(chat_id, message_id))
        if not data:
            raise NotFound("Poll not found", path=message_path(chat_id, message_id))
        poll = parse_message(message_id, data, chat_id)
        if not isinstance(poll, PollMessage):
            raise ValidationFailed("Message is not a poll")
        return poll

    async def vote(self, chat_id: str, message_id: str, option_id: str, uid: str) -> PollState:
        # re-read so a vote cast from another device is seen
        poll = await self.load(chat_id, message_id)
        if poll.deleted:
            raise ValidationFailed("This poll was deleted")
        if option_id not in poll.options:
            raise NotFound(f"Unknown poll option {option_id}")

        state = poll_state(poll, uid)
        if state.status == "voted":
            if state.option_id == option_id:
                return state
            raise AlreadyVoted("You have already voted in this poll")

        await self.store.set(join(message_path(chat_id, message_id), "options", option_id, "votes", uid), True)
        logger.debug("%s voted %s on poll %s", uid, option_id, message_id)
        return PollState(status="voted", option_id=option_id)
