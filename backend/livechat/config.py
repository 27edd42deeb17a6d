import os
from typing import List, Optional

from pydantic import BaseModel, Field


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./livechat.db"
    redis_url: Optional[str] = None

    admin_notification_url: Optional[str] = None
    notification_max_attempts: int = Field(3, ge=1)
    notification_retry_delay: float = Field(1.0, ge=0)
    notification_timeout: float = 10.0

    telegram_bot_token: Optional[str] = None
    operator_chat_ids: List[int] = Field(default_factory=list)
    webhook_host: str = "http://localhost:8000"

    operator_api_keys: List[str] = Field(default_factory=list)
    cors_origins: List[str] = Field(default_factory=list)

    chat_inactive_days: int = 3
    operator_inactive_minutes: int = 30
    sweep_interval_seconds: int = 3600

    assignment_strategy: str = "round_robin"
    auto_provision_operators: bool = False
    history_page_size: int = Field(50, ge=1, le=200)
    socketio_path: str = "socket.io"

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "database_url": os.getenv("DATABASE_URL"),
            "redis_url": os.getenv("REDIS_URL"),
            "admin_notification_url": os.getenv("ADMIN_NOTIFICATION_URL"),
            "notification_max_attempts": os.getenv("NOTIFICATION_MAX_ATTEMPTS"),
            "notification_retry_delay": os.getenv("NOTIFICATION_RETRY_DELAY"),
            "notification_timeout": os.getenv("NOTIFICATION_TIMEOUT"),
            "telegram_bot_token": os.getenv("TELEGRAM_BOT_TOKEN"),
            "operator_chat_ids": _split(os.getenv("OPERATOR_CHAT_IDS")),
            "webhook_host": os.getenv("WEBHOOK_HOST"),
            "operator_api_keys": _split(os.getenv("OPERATOR_API_KEYS")),
            "cors_origins": _split(os.getenv("CORS_ORIGINS")),
            "chat_inactive_days": os.getenv("CHAT_INACTIVE_DAYS"),
            "operator_inactive_minutes": os.getenv("OPERATOR_INACTIVE_MINUTES"),
            "sweep_interval_seconds": os.getenv("SWEEP_INTERVAL_SECONDS"),
            "assignment_strategy": os.getenv("ASSIGNMENT_STRATEGY"),
            "auto_provision_operators": os.getenv("AUTO_PROVISION_OPERATORS"),
            "history_page_size": os.getenv("HISTORY_PAGE_SIZE"),
            "socketio_path": os.getenv("SOCKETIO_PATH"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_json": os.getenv("LOG_JSON"),
        }
        # unset variables fall back to the field defaults
        return cls(**{key: value for key, value in raw.items() if value not in (None, "")})
