"""Calendar adapter factory — one adapter per source kind."""

from __future__ import annotations

from zoneinfo import ZoneInfo

from eventsync.config import settings
from eventsync.data.models import SourceKind
from eventsync.ports.calendar_port import CalendarSourcePort


def create_source_adapter(kind: SourceKind | str) -> CalendarSourcePort:
    """Return the calendar adapter for a source kind ("api" or "feed")."""
    kind = SourceKind(kind.lower() if isinstance(kind, str) else kind)

    if kind is SourceKind.API:
        from eventsync.adapters.google_calendar import GoogleCalendarAdapter

        return GoogleCalendarAdapter(credentials_json=settings.GOOGLE_CREDENTIALS)

    if kind is SourceKind.FEED:
        from eventsync.adapters.ics_feed import IcsFeedAdapter

        return IcsFeedAdapter(
            timeout_seconds=settings.SOURCE_TIMEOUT_SECONDS,
            default_tz=ZoneInfo(settings.TIMEZONE),
        )

    raise ValueError(f"Unknown calendar source kind: {kind!r}")


def create_source_adapters() -> dict[SourceKind, CalendarSourcePort]:
    """Adapters for every kind, keyed for the aggregator."""
    return {kind: create_source_adapter(kind) for kind in SourceKind}
