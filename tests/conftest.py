"""Shared test fixtures and configuration.

Sets up fake environment variables so eventsync.config doesn't sys.exit(),
and provides common fixtures like temp-file databases.
"""

import os

# Patch env vars BEFORE any eventsync imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("CALENDAR_SOURCES", "")
os.environ.setdefault("TIMEZONE", "UTC")

import pytest
from datetime import datetime, timedelta, timezone


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_events.db")


@pytest.fixture
def event_db(tmp_db_path):
    """Return an EventDB instance backed by a temp file."""
    from eventsync.data.db import EventDB
    return EventDB(db_path=tmp_db_path, timezone_name="UTC")


@pytest.fixture
def preset_db(tmp_db_path):
    """Return a PresetDB instance sharing the temp file."""
    from eventsync.data.db import PresetDB
    return PresetDB(db_path=tmp_db_path)


@pytest.fixture
def now():
    """A fixed 'now' so window arithmetic is deterministic."""
    return datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_occurrence(now):
    """Factory for NormalizedOccurrence with sensible defaults."""
    from eventsync.data.models import NormalizedOccurrence

    def _make(occurrence_id="e1", source_id="primary", source_name="Work",
              title="Raid night", start=None, minutes=30):
        start = start or now + timedelta(days=1)
        return NormalizedOccurrence(
            source_name=source_name,
            source_id=source_id,
            external_occurrence_id=occurrence_id,
            title=title,
            description="",
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            duration_minutes=minutes,
        )

    return _make
