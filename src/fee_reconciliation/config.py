"""Runtime configuration read from environment variables."""

import os
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./fee_reconciliation.db"

DEFAULT_TRUSTED_SENDER_DOMAINS = [
    "standardbank.co.za",
    "sbsa.co.za",
    "standard-bank",
    "standardbank.com",
]


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Optional[str], default: List[str]) -> List[str]:
    if value is None or value.strip() == "":
        return list(default)
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Settings for the reconciliation service."""
    database_url: str = Field(default=DEFAULT_DATABASE_URL, description="SQLAlchemy async database URL")
    api_key: Optional[str] = Field(default=None, description="Shared bearer token for the HTTP API")
    trusted_sender_domains: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRUSTED_SENDER_DOMAINS),
        description="Sender address fragments accepted by the notification webhook",
    )
    notification_workers: int = Field(default=4, ge=1, description="Concurrent notification workers")
    notification_queue_size: int = Field(default=0, ge=0, description="Queue bound, 0 means unbounded")
    webhook_rate_limit: str = Field(default="120/minute", description="slowapi rate limit for the webhook")
    statement_content_dedup: bool = Field(
        default=True,
        description="Skip statement rows already imported from a different statement",
    )
    log_level: str = Field(default="INFO")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment.

        Returns:
            Settings instance.
        """
        return cls(
            database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
            api_key=os.getenv("API_KEY"),
            trusted_sender_domains=_parse_list(
                os.getenv("TRUSTED_SENDER_DOMAINS"), DEFAULT_TRUSTED_SENDER_DOMAINS
            ),
            notification_workers=int(os.getenv("NOTIFICATION_WORKERS", "4")),
            notification_queue_size=int(os.getenv("NOTIFICATION_QUEUE_SIZE", "0")),
            webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "120/minute"),
            statement_content_dedup=_parse_bool(os.getenv("STATEMENT_CONTENT_DEDUP"), True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, read once."""
    settings = Settings.from_env()
    logger.debug(f"Loaded settings with {settings.notification_workers} notification workers")
    return settings
