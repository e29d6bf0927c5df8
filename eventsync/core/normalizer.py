"""
EventSync — Occurrence Normalizer.

Turns whatever a calendar adapter produced into NormalizedOccurrence records.
The same rules apply to every adapter:

- all-day (date-only) occurrences, and occurrences missing an end, are dropped;
- duration is rounded minutes between start and end unless the source gave one;
- occurrences without a native id get a stable synthetic one.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo

from eventsync.data.models import CalendarSource, NormalizedOccurrence, ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class RawOccurrence:
    """An occurrence as read from a source, before normalization.

    start/end are datetimes for timed entries, dates for all-day ones,
    or None when the source did not provide them.
    """

    title: str
    start: datetime | date | None
    end: datetime | date | None
    description: str = ""
    native_id: str | None = None
    link: str = ""
    duration_minutes: int | None = None


def is_timed(value: datetime | date | None) -> bool:
    """True for a concrete instant; False for dates and missing values."""
    return isinstance(value, datetime)


def synthetic_occurrence_id(source_id: str, start: datetime, title: str) -> str:
    """Stable id for occurrences the source did not identify."""
    title_hash = hashlib.sha256(title.strip().encode("utf-8")).hexdigest()[:12]
    seed = f"{source_id}|{start.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}|{title_hash}"
    return "syn_" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:20]


def normalize_occurrence(
    source: CalendarSource,
    raw: RawOccurrence,
    default_tz: tzinfo = timezone.utc,
) -> NormalizedOccurrence | None:
    """Normalize one raw occurrence, or return None if it cannot be scheduled."""
    if not is_timed(raw.start) or not is_timed(raw.end):
        logger.debug("Skipping all-day or open-ended occurrence: %s", raw.title)
        return None

    start = ensure_utc(raw.start, default_tz)
    end = ensure_utc(raw.end, default_tz)

    if raw.duration_minutes is not None:
        duration = raw.duration_minutes
    else:
        duration = round((end - start).total_seconds() / 60)
    if duration < 0:
        logger.warning("Skipping occurrence '%s': ends before it starts", raw.title)
        return None

    occurrence_id = raw.native_id or synthetic_occurrence_id(
        source.source_id, start, raw.title,
    )

    return NormalizedOccurrence(
        source_name=source.name,
        source_id=source.source_id,
        external_occurrence_id=occurrence_id,
        title=raw.title,
        description=raw.description,
        start_time=start,
        end_time=end,
        duration_minutes=duration,
        link=raw.link,
    )


def in_window(
    occurrence: NormalizedOccurrence, window_start: datetime, window_end: datetime,
) -> bool:
    """Half-open window check on the start instant: [window_start, window_end)."""
    return window_start <= occurrence.start_time < window_end
