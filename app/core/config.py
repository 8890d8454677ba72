# app/core/config.py
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env next to the project root; process env always wins
ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- Server ----
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    # ---- Storage ----
    STORE_BACKEND: Literal["json", "postgres"] = "json"
    DATA_DIR: str = "./data"
    DATABASE_URL: Optional[str] = None

    # ---- Pipeline ----
    LOG_LIMIT: int = Field(default=25, ge=1)
    SNAPSHOT_SIZE: int = Field(default=25, ge=1)
    DEBOUNCE_SECONDS: float = Field(default=5.0, ge=0)

    # ---- Feed polling ----
    POLL_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    FEED_TIMEOUT_S: float = 15.0
    FEED_MAX_CONCURRENCY: int = Field(default=5, ge=1)
    FEED_USER_AGENT: str = "feedcast/1.0"
    FEED_HISTORY_SIZE: int = Field(default=100, ge=1)

    # ---- Subscribers ----
    SEND_QUEUE_SIZE: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.LOG_LEVEL.strip().upper())
        return level if isinstance(level, int) else logging.INFO


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def require_database_url(settings: Settings) -> str:
    """
    Runtime check with a clear message when the postgres backend is selected
    without a DSN.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is missing while STORE_BACKEND=postgres. "
            f"Set it in the environment or in {ENV_FILE}."
        )
    return settings.DATABASE_URL
