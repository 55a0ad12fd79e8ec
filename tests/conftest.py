"""Shared test fixtures and configuration.

Sets up fake environment variables so opsdesk.config doesn't sys.exit(),
and provides temp-file SQLite stores.
"""

import os

# Patch env vars BEFORE any opsdesk imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("BOSS_USER_ID", "boss")
os.environ.setdefault("STAFF_USER_IDS", "staff-1")

from datetime import datetime, timedelta, timezone

import pytest

CIVIL = timezone(timedelta(hours=8))


def civil(year, month, day, hour=0, minute=0):
    """Aware datetime in the UTC+8 civil offset."""
    return datetime(year, month, day, hour, minute, tzinfo=CIVIL)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores in a test."""
    return str(tmp_path / "test_opsdesk.db")


@pytest.fixture
def directory_db(tmp_db_path):
    from opsdesk.data.db import DirectoryDB
    return DirectoryDB(db_path=tmp_db_path)


@pytest.fixture
def task_db(tmp_db_path):
    from opsdesk.data.db import TaskDB
    return TaskDB(db_path=tmp_db_path)


@pytest.fixture
def checklist_db(tmp_db_path):
    from opsdesk.data.db import ChecklistDB
    return ChecklistDB(db_path=tmp_db_path)


@pytest.fixture
def reminder_db(tmp_db_path):
    from opsdesk.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path)


@pytest.fixture
def message_log_db(tmp_db_path):
    from opsdesk.data.db import MessageLogDB
    return MessageLogDB(db_path=tmp_db_path)
