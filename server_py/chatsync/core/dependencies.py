from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

from chatsync.core.security import decode_uid
from chatsync.store.base import RemoteStore

security = HTTPBearer(auto_error=False)


async def get_current_uid(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """
    Resolves the caller's uid from the bearer token.
    Returns None when the token is missing or invalid.
    """
    if not credentials:
        return None
    return decode_uid(credentials.credentials)


async def require_auth(current_uid: Optional[str] = Depends(get_current_uid)) -> str:
    if current_uid is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_uid


def get_store(request: Request) -> RemoteStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Store not initialized")
    return store
