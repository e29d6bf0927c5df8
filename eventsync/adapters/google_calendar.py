"""Google Calendar adapter — implements CalendarSourcePort for the Calendar API.

All Google-specific logic lives here. The aggregator never imports this
directly; it depends on the CalendarSourcePort protocol.

Recurring series are expanded by the API (singleEvents=True); this adapter
only reads single instances.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime

from eventsync.core.normalizer import RawOccurrence
from eventsync.data.models import CalendarSource
from eventsync.ports.calendar_port import CalendarSourceError

logger = logging.getLogger(__name__)

_PAGE_SIZE = 250


def _parse_when(when: dict | None) -> datetime | date | None:
    """Read a Calendar API start/end object: dateTime for timed, date for all-day."""
    if not when:
        return None
    if when.get("dateTime"):
        return datetime.fromisoformat(when["dateTime"].replace("Z", "+00:00"))
    if when.get("date"):
        return date.fromisoformat(when["date"])
    return None


def _item_to_raw(item: dict) -> RawOccurrence:
    return RawOccurrence(
        title=item.get("summary", ""),
        description=item.get("description", ""),
        start=_parse_when(item.get("start")),
        end=_parse_when(item.get("end")),
        native_id=item.get("id") or None,
        link=item.get("htmlLink", ""),
    )


class GoogleCalendarAdapter:
    """Google Calendar implementation of CalendarSourcePort.

    The API service is built on first use and reused for the adapter's
    lifetime, so the process authenticates once.
    """

    def __init__(self, credentials_json: str | None = None, service=None) -> None:
        self._credentials_json = credentials_json
        self._service = service

    def _get_service(self):
        if self._service is None:
            from eventsync.integrations.google_auth import get_calendar_service

            if self._credentials_json is None:
                from eventsync.config import settings
                self._credentials_json = settings.GOOGLE_CREDENTIALS
            self._service = get_calendar_service(self._credentials_json)
        return self._service

    def _list_items(
        self, calendar_id: str, window_start: datetime, window_end: datetime,
    ) -> list[dict]:
        service = self._get_service()
        items: list[dict] = []
        page_token = None
        while True:
            result = (
                service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=window_start.isoformat(),
                    timeMax=window_end.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=_PAGE_SIZE,
                    pageToken=page_token,
                )
                .execute()
            )
            items.extend(result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    async def fetch_window(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawOccurrence]:
        try:
            items = await asyncio.to_thread(
                self._list_items, source.locator, window_start, window_end,
            )
        except Exception as exc:
            logger.error("Google Calendar API error for '%s': %s", source.name, exc)
            raise CalendarSourceError(
                f"Failed to list events from '{source.name}': {exc}"
            ) from exc

        occurrences = [
            _item_to_raw(item) for item in items if item.get("status") != "cancelled"
        ]
        logger.info(
            "Found %d event(s) in '%s' between %s and %s",
            len(occurrences),
            source.name,
            window_start.isoformat(),
            window_end.isoformat(),
        )
        return occurrences
