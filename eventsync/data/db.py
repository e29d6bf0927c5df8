"""
EventSync — Event Database.

The canonical event store: events and their signup state persist in SQLite
across restarts. Imported events are keyed by a UNIQUE dedup key so the same
external occurrence can never be stored twice.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo

import pydantic

from eventsync.data.errors import NotFound, ValidationError
from eventsync.data.models import (
    Event,
    EventOrigin,
    EventSpec,
    ImportOrigin,
    NormalizedOccurrence,
    Preset,
    Role,
    RoleSpec,
    ensure_utc,
    imported_event_id,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "title",
    "description",
    "start_time",
    "duration_minutes",
    "max_participants",
    "channel_ref",
    "space_ref",
}


def _dump_roles(roles: list[Role]) -> str:
    return json.dumps([r.to_dict() for r in roles], ensure_ascii=False)


def _dump_signups(signups: dict[str, list[str]]) -> str:
    return json.dumps(signups, ensure_ascii=False)


class EventDB:
    """SQLite-backed storage for events and their signups."""

    def __init__(self, db_path: str | None = None, timezone_name: str | None = None) -> None:
        if db_path is None or timezone_name is None:
            from eventsync.config import settings
            db_path = db_path or settings.DATABASE_PATH
            timezone_name = timezone_name or settings.TIMEZONE

        self._db_path = db_path
        self._tz = ZoneInfo(timezone_name)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the events table and its indexes if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id                     TEXT    PRIMARY KEY,
                    title                  TEXT    NOT NULL,
                    description            TEXT    NOT NULL DEFAULT '',
                    start_time             TEXT    NOT NULL,
                    duration_minutes       INTEGER NOT NULL DEFAULT 60,
                    max_participants       INTEGER NOT NULL DEFAULT 0,
                    roles                  TEXT    NOT NULL DEFAULT '[]',
                    signups                TEXT    NOT NULL DEFAULT '{}',
                    origin                 TEXT    NOT NULL DEFAULT 'manual',
                    source_name            TEXT,
                    source_id              TEXT,
                    external_occurrence_id TEXT,
                    dedup_key              TEXT,
                    link                   TEXT,
                    posted_message_ref     TEXT,
                    channel_ref            TEXT,
                    space_ref              TEXT,
                    created_by             TEXT    NOT NULL DEFAULT 'unknown',
                    created_at             TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_dedup_key "
                "ON events (dedup_key) WHERE dedup_key IS NOT NULL"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_space_ref ON events (space_ref)"
            )
        logger.debug("Events table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        origin = EventOrigin(row["origin"])
        imported = None
        if origin is EventOrigin.IMPORTED:
            imported = ImportOrigin(
                source_name=row["source_name"] or "",
                source_id=row["source_id"] or "",
                external_occurrence_id=row["external_occurrence_id"] or "",
                link=row["link"] or "",
            )
        return Event(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            start_time=datetime.fromisoformat(row["start_time"]),
            duration_minutes=row["duration_minutes"],
            max_participants=row["max_participants"],
            roles=[Role.from_dict(r) for r in json.loads(row["roles"])],
            signups=json.loads(row["signups"]),
            origin=origin,
            imported=imported,
            posted_message_ref=row["posted_message_ref"],
            channel_ref=row["channel_ref"],
            space_ref=row["space_ref"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def _validate(self, spec: EventSpec | Mapping[str, Any]) -> EventSpec:
        if isinstance(spec, EventSpec):
            return spec
        try:
            return EventSpec.model_validate(dict(spec))
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc

    # -- CRUD ---------------------------------------------------------------

    def create(
        self,
        spec: EventSpec | Mapping[str, Any],
        imported: ImportOrigin | None = None,
    ) -> Event:
        """Validate and insert a new event with an empty signup list per role.

        Raises ValidationError on bad input and sqlite3.IntegrityError when an
        imported event with the same dedup key already exists.
        """
        spec = self._validate(spec)
        if imported is not None:
            event_id = imported_event_id(imported.dedup_key)
            origin = EventOrigin.IMPORTED
        else:
            event_id = f"evt_{uuid.uuid4().hex[:12]}"
            origin = EventOrigin.MANUAL

        roles = [r.to_role() for r in spec.roles]
        event = Event(
            id=event_id,
            title=spec.title,
            description=spec.description,
            start_time=ensure_utc(spec.start_time, self._tz),
            duration_minutes=spec.duration_minutes,
            max_participants=spec.max_participants,
            roles=roles,
            signups={r.name: [] for r in roles},
            origin=origin,
            imported=imported,
            channel_ref=spec.channel_ref,
            space_ref=spec.space_ref,
            created_by=spec.created_by,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO events
                    (id, title, description, start_time, duration_minutes,
                     max_participants, roles, signups, origin,
                     source_name, source_id, external_occurrence_id, dedup_key, link,
                     posted_message_ref, channel_ref, space_ref, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
                """,
                (
                    event.id, event.title, event.description,
                    event.start_time.isoformat(), event.duration_minutes,
                    event.max_participants, _dump_roles(event.roles),
                    _dump_signups(event.signups), event.origin.value,
                    imported.source_name if imported else None,
                    imported.source_id if imported else None,
                    imported.external_occurrence_id if imported else None,
                    imported.dedup_key if imported else None,
                    imported.link if imported else None,
                    event.channel_ref, event.space_ref,
                    event.created_by, event.created_at,
                ),
            )
        logger.info("Event created: %s '%s' (%s)", event.id, event.title, origin.value)
        return event

    def get(self, event_id: str) -> Event | None:
        """Fetch a single event by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def get_by_dedup_key(self, dedup_key: str) -> Event | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE dedup_key = ?", (dedup_key,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def update(self, event_id: str, **fields: Any) -> Event:
        """Update plain fields of an event. Raises NotFound for an unknown id."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")

        event = self.get(event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")

        merged = {
            "title": event.title,
            "description": event.description,
            "start_time": event.start_time,
            "duration_minutes": event.duration_minutes,
            "max_participants": event.max_participants,
            "channel_ref": event.channel_ref,
            "space_ref": event.space_ref,
            **fields,
        }
        spec = self._validate(merged)
        start_time = ensure_utc(spec.start_time, self._tz)

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE events SET title = ?, description = ?, start_time = ?,
                    duration_minutes = ?, max_participants = ?,
                    channel_ref = ?, space_ref = ?
                WHERE id = ?
                """,
                (
                    spec.title, spec.description, start_time.isoformat(),
                    spec.duration_minutes, spec.max_participants,
                    spec.channel_ref, spec.space_ref, event_id,
                ),
            )

        event.title = spec.title
        event.description = spec.description
        event.start_time = start_time
        event.duration_minutes = spec.duration_minutes
        event.max_participants = spec.max_participants
        event.channel_ref = spec.channel_ref
        event.space_ref = spec.space_ref
        logger.info("Event %s updated: %s", event_id, sorted(fields))
        return event

    def delete(self, event_id: str) -> bool:
        """Permanently delete an event by ID."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Event %s deleted", event_id)
        return deleted

    def list_by_space(self, space_ref: str | None) -> list[Event]:
        """All events posted to a space (guild/chat group); None lists everything."""
        query = "SELECT * FROM events"
        params: list = []
        if space_ref is not None:
            query += " WHERE space_ref = ?"
            params.append(space_ref)
        query += " ORDER BY start_time"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_upcoming(
        self, space_ref: str | None = None, now: datetime | None = None,
    ) -> list[Event]:
        """Events that have not started yet, soonest first."""
        now = now or datetime.now(timezone.utc)
        return [e for e in self.list_by_space(space_ref) if e.start_time > now]

    # -- Import / posting ---------------------------------------------------

    def import_if_new(
        self,
        occurrence: NormalizedOccurrence,
        channel_ref: str | None = None,
        space_ref: str | None = None,
    ) -> Event | None:
        """Insert an external occurrence unless its dedup key is already stored.

        Returns the new Event, or None when the occurrence was imported before.
        Nothing is mutated in the None case.
        """
        dedup_key = occurrence.dedup_key
        if self.get_by_dedup_key(dedup_key) is not None:
            logger.debug("Skipping already imported occurrence %s", dedup_key)
            return None

        spec = EventSpec(
            title=occurrence.title or "Imported Event",
            description=occurrence.description or f"Imported from {occurrence.source_name}",
            start_time=occurrence.start_time,
            duration_minutes=max(occurrence.duration_minutes, 0),
            channel_ref=channel_ref,
            space_ref=space_ref,
            created_by="calendar_import",
        )
        origin = ImportOrigin(
            source_name=occurrence.source_name,
            source_id=occurrence.source_id,
            external_occurrence_id=occurrence.external_occurrence_id,
            link=occurrence.link,
        )
        try:
            return self.create(spec, imported=origin)
        except sqlite3.IntegrityError:
            # Another writer stored the same occurrence between check and insert
            logger.debug("Concurrent import of %s, keeping the existing event", dedup_key)
            return None

    def record_posted_reference(self, event_id: str, ref: str) -> bool:
        """Remember the message that announced an event.

        The event may have been deleted between fetch and post; that is logged
        and reported as False, never raised.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE events SET posted_message_ref = ? WHERE id = ?",
                (ref, event_id),
            )
        if cursor.rowcount == 0:
            logger.warning("Cannot record posted message %s: event %s not found", ref, event_id)
            return False
        logger.info("Event %s posted as message %s", event_id, ref)
        return True

    def list_unposted_imports(self, space_ref: str | None = None) -> list[Event]:
        """Imported events whose announcement never went out."""
        query = (
            "SELECT * FROM events WHERE origin = ? AND posted_message_ref IS NULL"
        )
        params: list = [EventOrigin.IMPORTED.value]
        if space_ref is not None:
            query += " AND space_ref = ?"
            params.append(space_ref)
        query += " ORDER BY start_time"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    # -- Signup state -------------------------------------------------------

    def modify(self, event_id: str, mutate: Callable[[Event], bool]) -> Event | None:
        """Read-modify-write an event's roles and signups in one transaction.

        `mutate` receives the current event and returns True if it changed it.
        Returns the (possibly changed) event, or None if the id is unknown.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            event = self._row_to_event(row)
            if mutate(event):
                conn.execute(
                    "UPDATE events SET roles = ?, signups = ? WHERE id = ?",
                    (_dump_roles(event.roles), _dump_signups(event.signups), event_id),
                )
            conn.commit()
            return event
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def stats(self, space_ref: str | None = None, now: datetime | None = None) -> dict:
        """Counts for a status overview."""
        now = now or datetime.now(timezone.utc)
        events = self.list_by_space(space_ref)
        return {
            "total_events": len(events),
            "upcoming_events": sum(1 for e in events if e.start_time > now),
            "total_signups": sum(e.signup_count() for e in events),
            "imported_events": sum(1 for e in events if e.origin is EventOrigin.IMPORTED),
        }


class PresetDB:
    """SQLite-backed storage for event presets."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from eventsync.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS presets (
                    key              TEXT    PRIMARY KEY,
                    name             TEXT    NOT NULL,
                    description      TEXT    NOT NULL DEFAULT '',
                    duration_minutes INTEGER NOT NULL DEFAULT 60,
                    max_participants INTEGER NOT NULL DEFAULT 0,
                    roles            TEXT    NOT NULL DEFAULT '[]'
                )
            """)
        logger.debug("Presets table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_preset(row: sqlite3.Row) -> Preset:
        return Preset(
            key=row["key"],
            name=row["name"],
            description=row["description"],
            duration_minutes=row["duration_minutes"],
            max_participants=row["max_participants"],
            roles=[Role.from_dict(r) for r in json.loads(row["roles"])],
        )

    def add_preset(
        self,
        key: str,
        name: str,
        duration_minutes: int = 60,
        description: str = "",
        max_participants: int = 0,
        roles: list[RoleSpec] | None = None,
    ) -> Preset:
        """Insert a new preset. Keys are lowercase letters, digits and hyphens."""
        if not Preset.is_valid_key(key):
            raise ValidationError(
                "Key must be lowercase letters, numbers, and hyphens only"
            )
        if duration_minutes < 0 or max_participants < 0:
            raise ValidationError("Duration and max participants cannot be negative")

        preset = Preset(
            key=key,
            name=name,
            description=description,
            duration_minutes=duration_minutes,
            max_participants=max_participants,
            roles=[r.to_role() for r in roles or []],
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO presets
                        (key, name, description, duration_minutes, max_participants, roles)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        key, name, description, duration_minutes,
                        max_participants, _dump_roles(preset.roles),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Preset '{key}' already exists") from exc
        logger.info("Preset added: '%s' (%s)", key, name)
        return preset

    def get_preset(self, key: str) -> Preset | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM presets WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return self._row_to_preset(row)

    def list_presets(self) -> list[Preset]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM presets ORDER BY key").fetchall()
        return [self._row_to_preset(r) for r in rows]

    def search_presets(self, query: str) -> list[Preset]:
        """Presets whose key or name contains the query (case-insensitive)."""
        q = query.lower()
        return [
            p for p in self.list_presets()
            if q in p.key.lower() or q in p.name.lower()
        ]

    def delete_preset(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM presets WHERE key = ?", (key,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Preset '%s' deleted", key)
        return deleted
