from __future__ import annotations

from typing import Optional


class ChatSyncError(Exception):
    """Base error for store and sync failures."""

    code = "error"

    def __init__(self, message: str = "", *, path: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.path = path


class ValidationFailed(ChatSyncError):
    """Local input rejected before any remote call."""

    code = "validation_failed"


class EditWindowExpired(ValidationFailed):
    code = "edit_window_expired"


class AlreadyVoted(ValidationFailed):
    code = "already_voted"


class LastAdminError(ValidationFailed):
    code = "last_admin"


class PermissionDenied(ChatSyncError):
    """Write rejected by the store's authorization."""

    code = "permission_denied"


class NetworkUnavailable(ChatSyncError):
    """Transient connectivity loss. Safe to retry."""

    code = "network_unavailable"


class NotFound(ChatSyncError):
    code = "not_found"


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, NetworkUnavailable)
