"""
EventSync — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module imports the singleton as:
    from eventsync.config import settings
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from eventsync/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (notification surface + command layer)
    TELEGRAM_BOT_TOKEN: str
    ALLOWED_USER_IDS: list[int] = []

    # Google Calendar API: service-account or authorized-user JSON,
    # inline or as a path to a file
    GOOGLE_CREDENTIALS: str = ""

    # "Name:locator,Other:locator"; a locator is a calendar id or a feed URL
    CALENDAR_SOURCES: str = ""

    # SQLite
    DATABASE_PATH: str = "data/events.db"

    TIMEZONE: str = "UTC"

    # Auto-sync
    SYNC_INTERVAL_MS: int = 60 * 60 * 1000
    SYNC_WINDOW_SECONDS: int = 168 * 60 * 60
    SOURCE_TIMEOUT_SECONDS: float = 20.0
    AUTO_SYNC_CHANNEL: str = ""   # empty → auto-sync is off at boot
    DEFAULT_SPACE: str = ""

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("SYNC_INTERVAL_MS", "SYNC_WINDOW_SECONDS", mode="before")
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        GOOGLE_CREDENTIALS=os.getenv("GOOGLE_CREDENTIALS", ""),
        CALENDAR_SOURCES=os.getenv("CALENDAR_SOURCES", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/events.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        SYNC_INTERVAL_MS=os.getenv("SYNC_INTERVAL_MS", str(60 * 60 * 1000)),
        SYNC_WINDOW_SECONDS=os.getenv("SYNC_WINDOW_SECONDS", str(168 * 60 * 60)),
        SOURCE_TIMEOUT_SECONDS=float(os.getenv("SOURCE_TIMEOUT_SECONDS", "20")),
        AUTO_SYNC_CHANNEL=os.getenv("AUTO_SYNC_CHANNEL", ""),
        DEFAULT_SPACE=os.getenv("DEFAULT_SPACE", ""),
    )


settings = _load_settings()
