"""
OpsDesk Assistant — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module reads its knobs from the `settings` singleton; the core
functions take the values they need as parameters so they stay testable.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from opsdesk/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM — provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "openai"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str

    # SQLite
    DATABASE_PATH: str = "data/opsdesk.db"

    # Civil time: one fixed offset for every date/time computation
    UTC_OFFSET_HOURS: int = 8

    # Identities
    BOSS_USER_ID: str = ""                 # never dispatched, acknowledges customers
    STAFF_USER_IDS: list[str] = []         # extra staff whose replies count as handled
    ALLOWED_USER_IDS: list[int] = []       # admins allowed to run /register, /employee

    # Notification throttle
    REPLY_WINDOW_MINUTES: int = 120
    BURST_WINDOW_MINUTES: int = 30

    # Reminders and meetings
    DEFAULT_REMINDER_HOUR: int = 9
    DEFAULT_MEETING_HOUR: int = 14
    MEETING_LINK: str = ""

    # Scheduled jobs (civil hours)
    MORNING_REMINDER_HOUR: int = 9
    DAILY_TASKS_HOUR: int = 9
    EVENING_REMINDER_HOUR: int = 18
    DAILY_REPORT_HOUR: int = 19
    REMINDER_SWEEP_SECONDS: int = 60
    UNREPLIED_SWEEP_MINUTES: int = 30
    MONTHLY_REMINDER_HOUR: int = 9
    MONTHLY_SUMMARY_HOUR: int = 10      # on the 1st, covers last month
    WEEKEND_EMPLOYEES: list[str] = []

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("STAFF_USER_IDS", "WEEKEND_EMPLOYEES", mode="before")
    @classmethod
    def parse_names(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [item.strip() for item in v.split(",") if item.strip()]
        return []

    @field_validator(
        "UTC_OFFSET_HOURS",
        "REPLY_WINDOW_MINUTES",
        "BURST_WINDOW_MINUTES",
        "DEFAULT_REMINDER_HOUR",
        "DEFAULT_MEETING_HOUR",
        "MORNING_REMINDER_HOUR",
        "DAILY_TASKS_HOUR",
        "EVENING_REMINDER_HOUR",
        "DAILY_REPORT_HOUR",
        "REMINDER_SWEEP_SECONDS",
        "UNREPLIED_SWEEP_MINUTES",
        "MONTHLY_REMINDER_HOUR",
        "MONTHLY_SUMMARY_HOUR",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @property
    def staff_ids(self) -> set[str]:
        """Every author id whose message counts as a staff reply."""
        ids = set(self.STAFF_USER_IDS)
        if self.BOSS_USER_ID:
            ids.add(self.BOSS_USER_ID)
        return ids


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "openai"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/opsdesk.db"),
        UTC_OFFSET_HOURS=os.getenv("UTC_OFFSET_HOURS", "8"),
        BOSS_USER_ID=os.getenv("BOSS_USER_ID", ""),
        STAFF_USER_IDS=os.getenv("STAFF_USER_IDS", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        REPLY_WINDOW_MINUTES=os.getenv("REPLY_WINDOW_MINUTES", "120"),
        BURST_WINDOW_MINUTES=os.getenv("BURST_WINDOW_MINUTES", "30"),
        DEFAULT_REMINDER_HOUR=os.getenv("DEFAULT_REMINDER_HOUR", "9"),
        DEFAULT_MEETING_HOUR=os.getenv("DEFAULT_MEETING_HOUR", "14"),
        MEETING_LINK=os.getenv("MEETING_LINK", ""),
        MORNING_REMINDER_HOUR=os.getenv("MORNING_REMINDER_HOUR", "9"),
        DAILY_TASKS_HOUR=os.getenv("DAILY_TASKS_HOUR", "9"),
        EVENING_REMINDER_HOUR=os.getenv("EVENING_REMINDER_HOUR", "18"),
        DAILY_REPORT_HOUR=os.getenv("DAILY_REPORT_HOUR", "19"),
        REMINDER_SWEEP_SECONDS=os.getenv("REMINDER_SWEEP_SECONDS", "60"),
        UNREPLIED_SWEEP_MINUTES=os.getenv("UNREPLIED_SWEEP_MINUTES", "30"),
        MONTHLY_REMINDER_HOUR=os.getenv("MONTHLY_REMINDER_HOUR", "9"),
        MONTHLY_SUMMARY_HOUR=os.getenv("MONTHLY_SUMMARY_HOUR", "10"),
        WEEKEND_EMPLOYEES=os.getenv("WEEKEND_EMPLOYEES", ""),
    )


# Singleton — imported by all other modules as:
#   from opsdesk.config import settings
settings = _load_settings()
