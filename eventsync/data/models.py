"""
EventSync — Data Models.

Events live in SQLite and are the canonical record: signups, roles and the
reference of the posted announcement all hang off them. Calendar sources are
configuration, never persisted.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum

from pydantic import BaseModel, Field, field_validator

_FEED_SCHEMES = ("http://", "https://", "webcal://")
_PRESET_KEY_RE = re.compile(r"[a-z0-9-]+")


def ensure_utc(value: datetime, default_tz: tzinfo = timezone.utc) -> datetime:
    """Return an aware UTC datetime; naive values are read in default_tz."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=default_tz)
    return value.astimezone(timezone.utc)


def make_dedup_key(source_id: str, external_occurrence_id: str) -> str:
    return f"{source_id}::{external_occurrence_id}"


def imported_event_id(dedup_key: str) -> str:
    """Deterministic event id for an imported occurrence."""
    digest = hashlib.sha256(dedup_key.encode("utf-8")).hexdigest()
    return f"imp_{digest[:16]}"


# ---------------------------------------------------------------------------
# Calendar sources (configuration)
# ---------------------------------------------------------------------------


class SourceKind(str, Enum):
    API = "api"
    FEED = "feed"


@dataclass(frozen=True)
class CalendarSource:
    """A configured external calendar.

    The locator is either an API calendar id ("primary",
    "abc@group.calendar.google.com") or a feed URL. The kind is derived
    from its shape.
    """

    name: str
    locator: str

    @property
    def kind(self) -> SourceKind:
        if self.locator.lower().startswith(_FEED_SCHEMES):
            return SourceKind.FEED
        return SourceKind.API

    @property
    def source_id(self) -> str:
        return self.locator

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on name or locator."""
        q = query.lower()
        return q in self.name.lower() or q in self.locator.lower()


def parse_calendar_sources(raw: str) -> list[CalendarSource]:
    """Parse "Work:id1,Raids:https://host/feed.ics,id3" into sources.

    Unnamed entries are called "Calendar" when alone, "Calendar N" otherwise.
    """
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    sources: list[CalendarSource] = []
    for index, part in enumerate(parts):
        name, sep, rest = part.partition(":")
        # "https://..." has a colon too; that is a locator, not a name
        if sep and rest and not rest.startswith("//"):
            sources.append(CalendarSource(name=name.strip(), locator=rest.strip()))
            continue
        label = "Calendar" if len(parts) == 1 else f"Calendar {index + 1}"
        sources.append(CalendarSource(name=label, locator=part))
    return sources


# ---------------------------------------------------------------------------
# Normalized occurrences (aggregator output, import input)
# ---------------------------------------------------------------------------


@dataclass
class NormalizedOccurrence:
    """One concrete, timed occurrence from an external calendar."""

    source_name: str
    source_id: str
    external_occurrence_id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    link: str = ""

    @property
    def dedup_key(self) -> str:
        return make_dedup_key(self.source_id, self.external_occurrence_id)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventOrigin(str, Enum):
    MANUAL = "manual"
    IMPORTED = "imported"


@dataclass
class Role:
    """A named signup bucket; max_slots None means unlimited."""

    name: str
    emoji: str = ""
    max_slots: int | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "emoji": self.emoji, "max_slots": self.max_slots}

    @classmethod
    def from_dict(cls, data: dict) -> Role:
        return cls(
            name=data["name"],
            emoji=data.get("emoji", ""),
            max_slots=data.get("max_slots"),
        )


@dataclass
class ImportOrigin:
    """Where an imported event came from."""

    source_name: str
    source_id: str
    external_occurrence_id: str
    link: str = ""

    @property
    def dedup_key(self) -> str:
        return make_dedup_key(self.source_id, self.external_occurrence_id)


@dataclass
class Event:
    """A scheduled event users can sign up for."""

    id: str
    title: str
    description: str
    start_time: datetime                   # aware, UTC
    duration_minutes: int
    max_participants: int = 0              # 0 → unlimited (informational)
    roles: list[Role] = field(default_factory=list)
    signups: dict[str, list[str]] = field(default_factory=dict)
    origin: EventOrigin = EventOrigin.MANUAL
    imported: ImportOrigin | None = None
    posted_message_ref: str | None = None
    channel_ref: str | None = None
    space_ref: str | None = None
    created_by: str = "unknown"
    created_at: str = ""

    def __post_init__(self) -> None:
        if self.origin is EventOrigin.IMPORTED and self.imported is None:
            raise ValueError("Imported events need their import origin")
        if self.origin is EventOrigin.MANUAL and self.imported is not None:
            raise ValueError("Manual events cannot carry an import origin")

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def dedup_key(self) -> str | None:
        return self.imported.dedup_key if self.imported else None

    @property
    def is_posted(self) -> bool:
        return self.posted_message_ref is not None

    def get_role(self, role_name: str) -> Role | None:
        for role in self.roles:
            if role.name == role_name:
                return role
        return None

    def role_of(self, user_id: str) -> str | None:
        """Name of the role the user is signed up for, if any."""
        for role_name, users in self.signups.items():
            if user_id in users:
                return role_name
        return None

    def signup_count(self) -> int:
        return sum(len(users) for users in self.signups.values())


# ---------------------------------------------------------------------------
# Input shapes (validated at the boundary)
# ---------------------------------------------------------------------------


class RoleSpec(BaseModel):
    """A role as requested by a caller."""

    name: str = Field(min_length=1)
    emoji: str = ""
    max_slots: int | None = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("role name cannot be blank")
        return v

    def to_role(self) -> Role:
        return Role(name=self.name, emoji=self.emoji, max_slots=self.max_slots)


class EventSpec(BaseModel):
    """Fields needed to create an event.

    JSON example:
    {
        "title": "Raid night",
        "start_time": "2026-10-20T19:00:00+00:00",
        "duration_minutes": 120,
        "roles": [{"name": "Tank", "emoji": "🛡️", "max_slots": 2}]
    }
    """

    title: str = Field(min_length=1)
    description: str = ""
    start_time: datetime
    duration_minutes: int = Field(default=60, ge=0)
    max_participants: int = Field(default=0, ge=0)
    roles: list[RoleSpec] = []
    channel_ref: str | None = None
    space_ref: str | None = None
    created_by: str = "unknown"

    @field_validator("roles")
    @classmethod
    def unique_role_names(cls, v: list[RoleSpec]) -> list[RoleSpec]:
        names = [r.name for r in v]
        if len(names) != len(set(names)):
            raise ValueError("role names must be unique within an event")
        return v


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


@dataclass
class Preset:
    """A reusable event template, e.g. "raid-night" with its usual roles."""

    key: str
    name: str
    description: str = ""
    duration_minutes: int = 60
    max_participants: int = 0
    roles: list[Role] = field(default_factory=list)

    @staticmethod
    def is_valid_key(key: str) -> bool:
        return bool(_PRESET_KEY_RE.fullmatch(key))
