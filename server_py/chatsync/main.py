import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatsync.api.v1.api import api_router
from chatsync.core.config import settings
from chatsync.core.database import AsyncSessionLocal
from chatsync.core.errors import ChatSyncError, NetworkUnavailable, NotFound, PermissionDenied, ValidationFailed
from chatsync.core.init_db import init_db
from chatsync.store.base import RemoteStore
from chatsync.store.sql import SqlStore
from chatsync.websockets.store_ws import router as store_ws_router
from chatsync.websockets.store_ws import store_manager

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationFailed, 422),
    (PermissionDenied, 403),
    (NetworkUnavailable, 503),
    (NotFound, 404),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "store", None) is None:
        await init_db()
        app.state.store = SqlStore(AsyncSessionLocal)
        logger.info("Store emulator backed by %s", settings.DATABASE_URL)
    yield


def create_app(store: Optional[RemoteStore] = None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.store = store

    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ChatSyncError)
    async def store_error_handler(_request: Request, exc: ChatSyncError):
        status_code = next((code for error, code in _STATUS_BY_ERROR if isinstance(exc, error)), 500)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": exc.code, "path": exc.path},
        )

    @app.get("/health")
    async def health():
        current: RemoteStore = app.state.store
        return {
            "status": "ok",
            "connected": current.connected if current is not None else False,
            "listeners": current.listener_count if current is not None else 0,
            "sockets": store_manager.count,
        }

    app.include_router(api_router, prefix=settings.API_V1_STR)
    # Unprefixed routes as well, matching the hosted store's URLs
    app.include_router(api_router, prefix="")
    app.include_router(store_ws_router)
    return app


app = create_app()
