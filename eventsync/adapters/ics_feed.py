"""iCalendar feed adapter — implements CalendarSourcePort for .ics URLs.

Feeds have no server-side windowing: the whole document is downloaded with
httpx, parsed with icalendar, and recurring series are expanded locally
(python-dateutil) only as far as the requested window.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo

import httpx
from dateutil.rrule import rrulestr
from icalendar import Calendar as iCalendar

from eventsync.core.normalizer import RawOccurrence
from eventsync.data.models import CalendarSource, ensure_utc
from eventsync.ports.calendar_port import CalendarSourceError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 20.0
_HEADERS = {"Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5"}


def _feed_url(locator: str) -> str:
    """webcal:// is plain HTTPS as far as the server is concerned."""
    if locator.lower().startswith("webcal://"):
        return "https://" + locator[len("webcal://"):]
    return locator


def _instance_id(uid: str, start: datetime) -> str:
    return f"{uid}_{start.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}"


def _localize(value: datetime | date, default_tz: tzinfo) -> datetime | date:
    """Attach default_tz to floating (naive) datetimes; dates pass through."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=default_tz)
    return value


def _exdates(component, default_tz: tzinfo) -> set[datetime]:
    raw = component.get("exdate")
    if raw is None:
        return set()
    entries = raw if isinstance(raw, list) else [raw]
    excluded: set[datetime] = set()
    for entry in entries:
        for item in entry.dts:
            value = _localize(item.dt, default_tz)
            if isinstance(value, datetime):
                excluded.add(value.astimezone(timezone.utc))
    return excluded


def _event_end(component, start: datetime | date) -> datetime | date | None:
    dtend = component.get("dtend")
    if dtend is not None:
        return dtend.dt
    duration = component.get("duration")
    if duration is not None:
        return start + duration.dt
    return None


def _expand_series(
    component,
    start: datetime,
    end: datetime | date | None,
    window_start: datetime,
    window_end: datetime,
    skip: set[datetime],
    default_tz: tzinfo,
) -> list[tuple[datetime, datetime | None]]:
    """Instances of an RRULE series whose start falls inside the window."""
    rule_text = component.get("rrule").to_ical().decode("utf-8")
    rule = rrulestr(rule_text, dtstart=start)
    length = end - start if isinstance(end, datetime) else None
    excluded = _exdates(component, default_tz) | skip

    instances: list[tuple[datetime, datetime | None]] = []
    for occ_start in rule.between(window_start, window_end, inc=True):
        if occ_start.astimezone(timezone.utc) in excluded:
            continue
        occ_end = occ_start + length if length is not None else None
        instances.append((occ_start, occ_end))
    return instances


def parse_feed(
    text: str,
    window_start: datetime,
    window_end: datetime,
    default_tz: tzinfo = timezone.utc,
) -> list[RawOccurrence]:
    """Parse an iCalendar document into raw occurrences.

    Recurring series are expanded inside [window_start, window_end); single
    events are returned as-is and left to the aggregator's window filter.
    """
    try:
        cal = iCalendar.from_ical(text)
    except Exception as exc:
        raise CalendarSourceError(f"Malformed calendar feed: {exc}") from exc

    components = list(cal.walk("VEVENT"))

    # RECURRENCE-ID overrides replace one instance of their series
    overridden: dict[str, set[datetime]] = {}
    for component in components:
        rid = component.get("recurrence-id")
        if rid is not None and isinstance(rid.dt, datetime):
            uid = str(component.get("uid", ""))
            value = _localize(rid.dt, default_tz).astimezone(timezone.utc)
            overridden.setdefault(uid, set()).add(value)

    occurrences: list[RawOccurrence] = []
    for component in components:
        if str(component.get("status", "")).upper() == "CANCELLED":
            continue
        dtstart = component.get("dtstart")
        if dtstart is None:
            continue

        uid = str(component.get("uid", "")) or None
        title = str(component.get("summary", ""))
        description = str(component.get("description", ""))
        link = str(component.get("url", ""))
        start = _localize(dtstart.dt, default_tz)
        end = _event_end(component, start)
        if end is not None:
            end = _localize(end, default_tz)

        rid = component.get("recurrence-id")
        if rid is not None and uid and isinstance(rid.dt, datetime):
            native_id = _instance_id(uid, _localize(rid.dt, default_tz))
            occurrences.append(RawOccurrence(
                title=title, description=description, start=start, end=end,
                native_id=native_id, link=link,
            ))
            continue

        if component.get("rrule") is not None and isinstance(start, datetime) and uid:
            try:
                instances = _expand_series(
                    component, start, end, window_start, window_end,
                    overridden.get(uid, set()), default_tz,
                )
            except ValueError as exc:
                logger.warning("Cannot expand recurring event '%s': %s", title, exc)
                continue
            for occ_start, occ_end in instances:
                occurrences.append(RawOccurrence(
                    title=title, description=description, start=occ_start,
                    end=occ_end, native_id=_instance_id(uid, occ_start), link=link,
                ))
            continue

        occurrences.append(RawOccurrence(
            title=title, description=description, start=start, end=end,
            native_id=uid, link=link,
        ))

    return occurrences


class IcsFeedAdapter:
    """iCalendar feed implementation of CalendarSourcePort."""

    def __init__(
        self,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        default_tz: tzinfo = timezone.utc,
    ) -> None:
        self._timeout = timeout_seconds
        self._default_tz = default_tz

    async def fetch_window(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawOccurrence]:
        url = _feed_url(source.locator)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True,
            ) as client:
                resp = await client.get(url, headers=_HEADERS)
                resp.raise_for_status()
                text = resp.text
        except httpx.HTTPError as exc:
            logger.error("Feed fetch failed for '%s': %s", source.name, exc)
            raise CalendarSourceError(
                f"Failed to fetch feed '{source.name}': {exc}"
            ) from exc

        occurrences = parse_feed(
            text,
            ensure_utc(window_start),
            ensure_utc(window_end),
            self._default_tz,
        )
        logger.info("Parsed %d occurrence(s) from feed '%s'", len(occurrences), source.name)
        return occurrences
