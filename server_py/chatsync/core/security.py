from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from chatsync.core.config import settings
from chatsync.core.errors import PermissionDenied
from chatsync.store import paths


def create_access_token(uid: str, expires_minutes: Optional[int] = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.utcnow() + timedelta(minutes=minutes)
    return jwt.encode({"sub": uid, "exp": expire}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_uid(token: Optional[str]) -> Optional[str]:
    """Returns the uid carried by a token, or None when it is missing or invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    uid = payload.get("sub")
    if not isinstance(uid, str) or not uid:
        return None
    return uid


def check_write(uid: str, path: str) -> None:
    """Profiles under ``users/{uid}`` are writable only by their owner."""
    segments = paths.split(path)
    if not segments:
        raise PermissionDenied("Writing the root is not allowed", path=path)
    if segments[0] == "users" and (len(segments) < 2 or segments[1] != uid):
        raise PermissionDenied("Cannot write another user's profile", path=path)
