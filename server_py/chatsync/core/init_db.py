from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from chatsync.core.config import settings
from chatsync.core.database import Base

# Import models so they are registered in metadata before create_all
from chatsync.models import store_node  # noqa: F401


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Creates the data directory and the emulator tables."""
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(settings.DATABASE_URL)
    await create_tables(engine)
    await engine.dispose()
