from fastapi import APIRouter
from chatsync.api.v1.endpoints import store

api_router = APIRouter()
api_router.include_router(store.router, prefix="/store", tags=["store"])
