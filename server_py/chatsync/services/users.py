from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from chatsync.core.config import settings
from chatsync.core.errors import NotFound, ValidationFailed
from chatsync.schemas.user import UserProfile, UserStatus, presence_for
from chatsync.store.base import SERVER_TIMESTAMP, RemoteStore
from chatsync.store.paths import join, user_path

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, store: RemoteStore) -> None:
        self.store = store

    async def get_user(self, uid: str) -> UserProfile:
        data = await self.store.get(user_path(uid))
        if not data:
            raise NotFound(f"User {uid} not found", path=user_path(uid))
        return UserProfile.model_validate({**data, "uid": uid})

    async def ensure_user_record(
        self,
        uid: str,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> UserProfile:
        """Creates the profile on first sign-in; fills gaps on later ones."""
        data = await self.store.get(user_path(uid))
        if not data:
            profile = UserProfile(uid=uid, display_name=display_name, email=email, photo_url=photo_url)
            record = profile.to_store()
            record["createdAt"] = SERVER_TIMESTAMP
            await self.store.set(user_path(uid), record)
            logger.info("Created user record for %s", uid)
            return await self.get_user(uid)

        missing: Dict[str, Any] = {}
        if display_name and not data.get("displayName"):
            missing["displayName"] = display_name
        if email and not data.get("email"):
            missing["email"] = email
        if photo_url and not data.get("photoURL"):
            missing["photoURL"] = photo_url
        if missing:
            await self.store.update(user_path(uid), missing)
        return await self.get_user(uid)

    async def update_profile(
        self,
        uid: str,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        status: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> UserProfile:
        updates: Dict[str, Any] = {}
        if display_name is not None:
            if not display_name.strip():
                raise ValidationFailed("Display name cannot be empty")
            updates["displayName"] = display_name.strip()
        if bio is not None:
            if len(bio) > settings.BIO_MAX_LENGTH:
                raise ValidationFailed(f"Bio is limited to {settings.BIO_MAX_LENGTH} characters")
            updates["bio"] = bio
        if status is not None:
            try:
                status = UserStatus(status)
            except ValueError:
                raise ValidationFailed(f"Unknown status {status!r}") from None
            updates["status"] = status.value
            updates["presence"] = presence_for(status).value
            if status != UserStatus.OFFLINE:
                updates["lastActiveStatus"] = status.value
        if photo_url is not None:
            updates["photoURL"] = photo_url
        if updates:
            await self.store.update(user_path(uid), updates)
        try:
            return await self.get_user(uid)
        except ValidationError as exc:
            raise ValidationFailed(str(exc)) from exc

    async def block_user(self, uid: str, target: str) -> None:
        if uid == target:
            raise ValidationFailed("You cannot block yourself")
        await self.store.set(join(user_path(uid), "blocked", target), True)

    async def unblock_user(self, uid: str, target: str) -> None:
        await self.store.remove(join(user_path(uid), "blocked", target))

    async def is_blocked(self, uid: str, target: str) -> bool:
        """True when ``uid`` has blocked ``target``."""
        return bool(await self.store.get(join(user_path(uid), "blocked", target)))
