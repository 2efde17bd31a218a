import sys
from pathlib import Path

# Make the chatsync package importable when run from a checkout
sys.path.append(str(Path(__file__).resolve().parent))

import logging
import asyncio
import platform

import uvicorn
from chatsync.core.config import settings
from chatsync.core.init_db import init_db

# Windows: SelectorEventLoop instead of ProactorEventLoop
if platform.system() == 'Windows':
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Create the store tables
    asyncio.run(init_db())

    # reload=True ignores host, keep it off for network access
    uvicorn.run(
        "chatsync.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=False
    )
