from pydantic_settings import BaseSettings
from pathlib import Path
from typing import List


class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "ChatSync Store Emulator"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = BASE_DIR / "data"

    # Server
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 4001
    LOG_LEVEL: str = "INFO"

    # Database (emulator persistence)
    DATABASE_URL: str = f"sqlite+aiosqlite:///{DATA_DIR}/store.db"
    DATABASE_ECHO: bool = False

    # Security
    SECRET_KEY: str = "your-secret-key-here"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Store socket
    WS_QUEUE_LIMIT: int = 1000

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    # Message sync
    MESSAGES_PAGE_SIZE: int = 20
    RECONCILE_WINDOW_SECONDS: float = 60.0
    EDIT_WINDOW_MINUTES: int = 15

    # Typing / presence
    TYPING_DEBOUNCE_SECONDS: float = 5.0
    TYPING_STALE_SECONDS: float = 6.0

    # Outbox
    OUTBOX_MAX_ATTEMPTS: int = 3
    OUTBOX_RETRY_DELAY_SECONDS: float = 1.0

    # Notifications
    NOTICE_LIMIT: int = 20

    # Uploads and profiles
    FILE_SIZE_LIMIT: int = 5 * 1024 * 1024  # 5MB
    ALLOWED_FILE_TYPES: List[str] = [
        "image/jpeg", "image/png", "image/gif", "image/webp",
        "application/pdf", "text/plain",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ]
    BIO_MAX_LENGTH: int = 160

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Shared settings instance
settings = Settings()
