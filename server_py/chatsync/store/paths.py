"""Path helpers for the store namespace.

Paths are ``/``-separated without leading or trailing slashes; the root is
the empty string.
"""
from __future__ import annotations

from typing import List, Optional

from chatsync.core.errors import ValidationFailed

CONNECTED_PATH = ".info/connected"

_FORBIDDEN = set(".#$[]")


def split(path: str) -> List[str]:
    return [segment for segment in (path or "").split("/") if segment]


def normalize(path: str) -> str:
    return "/".join(split(path))


def validate_key(key: str) -> None:
    if not key or any(ch in _FORBIDDEN for ch in key):
        raise ValidationFailed(f"Invalid key {key!r}")


def validate_path(path: str) -> str:
    normalized = normalize(path)
    for segment in split(normalized):
        validate_key(segment)
    return normalized


def join(*parts: Optional[str]) -> str:
    return "/".join(segment for part in parts if part for segment in split(part))


def parent(path: str) -> str:
    return "/".join(split(path)[:-1])


def key_of(path: str) -> Optional[str]:
    segments = split(path)
    return segments[-1] if segments else None


def is_ancestor(ancestor: str, path: str) -> bool:
    """True when ``ancestor`` equals ``path`` or contains it."""
    if not ancestor:
        return True
    return path == ancestor or path.startswith(ancestor + "/")


def related(a: str, b: str) -> bool:
    return is_ancestor(a, b) or is_ancestor(b, a)


def relative(path: str, base: str) -> str:
    if not base:
        return path
    if path == base:
        return ""
    return path[len(base) + 1:]


# Namespace layout

def user_path(uid: str) -> str:
    return join("users", uid)


def chat_path(chat_id: str) -> str:
    return join("chats", chat_id)


def messages_path(chat_id: str) -> str:
    return join("messages", chat_id)


def message_path(chat_id: str, message_id: str) -> str:
    return join("messages", chat_id, message_id)


def user_chats_path(uid: str) -> str:
    return join("userChats", uid)


def user_chat_path(uid: str, chat_id: str) -> str:
    return join("userChats", uid, chat_id)


def typing_path(chat_id: str, uid: Optional[str] = None) -> str:
    return join("typing", chat_id, uid)


def logs_path(chat_id: str) -> str:
    return join("logs", chat_id)
