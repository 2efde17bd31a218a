from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from chatsync.core.config import settings

# Declarative base for the emulator's tables
Base = declarative_base()

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def make_session_factory(database_url: str, echo: bool = False):
    """Builds a separate engine + session factory (tests, alternate data dirs)."""
    other_engine = create_async_engine(database_url, echo=echo)
    return other_engine, sessionmaker(other_engine, class_=AsyncSession, expire_on_commit=False)
