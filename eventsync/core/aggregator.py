"""
EventSync — Calendar Aggregator.

Fetches a look-ahead window from every configured calendar source and merges
the results into one normalized, duplicate-free batch.

Failure isolation: a source that raises or times out is logged and recorded
as a SourceError; the other sources still contribute. The aggregation only
fails as a whole when there is nothing to aggregate (no sources, or a filter
that matches none of them).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import TYPE_CHECKING

from eventsync.core.normalizer import in_window, normalize_occurrence

if TYPE_CHECKING:
    from eventsync.data.models import CalendarSource, NormalizedOccurrence, SourceKind
    from eventsync.ports.calendar_port import CalendarSourcePort

logger = logging.getLogger(__name__)


class AggregateStatus(str, Enum):
    OK = "ok"
    NO_MATCHING_SOURCE = "no_matching_source"
    NO_SOURCES = "no_sources"


@dataclass
class SourceError:
    """One calendar source that could not be read during an aggregation."""

    source_name: str
    source_id: str
    error: str


@dataclass
class AggregateResult:
    """Outcome of one fetch across all selected sources."""

    status: AggregateStatus
    message: str
    occurrences: list[NormalizedOccurrence] = field(default_factory=list)
    source_errors: list[SourceError] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is AggregateStatus.OK


class CalendarAggregator:
    """Multi-source calendar reader."""

    def __init__(
        self,
        sources: list[CalendarSource],
        adapters: dict[SourceKind, CalendarSourcePort],
        timeout_seconds: float = 20.0,
        default_tz: tzinfo = timezone.utc,
    ) -> None:
        self._sources = list(sources)
        self._adapters = adapters
        self._timeout = timeout_seconds
        self._default_tz = default_tz

    @property
    def sources(self) -> list[CalendarSource]:
        return list(self._sources)

    def select_sources(self, source_filter: str | None = None) -> list[CalendarSource]:
        if not source_filter:
            return list(self._sources)
        return [s for s in self._sources if s.matches(source_filter)]

    async def fetch_all(
        self,
        window_seconds: int,
        source_filter: str | None = None,
        now: datetime | None = None,
    ) -> AggregateResult:
        """Fetch [now, now + window) from every selected source."""
        if not self._sources:
            return AggregateResult(
                status=AggregateStatus.NO_SOURCES,
                message="No calendar sources configured",
            )

        selected = self.select_sources(source_filter)
        if not selected:
            return AggregateResult(
                status=AggregateStatus.NO_MATCHING_SOURCE,
                message=f'No calendar found matching "{source_filter}"',
            )

        window_start = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        window_end = window_start + timedelta(seconds=window_seconds)
        logger.info(
            "Syncing from %d calendar(s): %s",
            len(selected),
            ", ".join(s.name for s in selected),
        )

        # Sources are independent; settle all of them before merging
        results = await asyncio.gather(
            *(self._fetch_source(s, window_start, window_end) for s in selected)
        )

        occurrences: list[NormalizedOccurrence] = []
        errors: list[SourceError] = []
        seen: set[str] = set()
        for batch, error in results:
            if error is not None:
                errors.append(error)
                continue
            for occurrence in batch:
                if occurrence.dedup_key in seen:
                    continue
                seen.add(occurrence.dedup_key)
                occurrences.append(occurrence)

        occurrences.sort(key=lambda o: o.start_time)
        label = selected[0].name if len(selected) == 1 else f"{len(selected)} calendars"
        message = f"Found {len(occurrences)} events from {label}"
        if errors:
            message += f" ({len(errors)} source(s) failed)"

        return AggregateResult(
            status=AggregateStatus.OK,
            message=message,
            occurrences=occurrences,
            source_errors=errors,
            sources=[s.name for s in selected],
        )

    async def _fetch_source(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
    ) -> tuple[list[NormalizedOccurrence], SourceError | None]:
        """Fetch and normalize one source. Never raises."""
        adapter = self._adapters.get(source.kind)
        if adapter is None:
            return [], self._source_error(source, f"No adapter for {source.kind.value} sources")

        try:
            raw = await asyncio.wait_for(
                adapter.fetch_window(source, window_start, window_end),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Timed out fetching '%s' after %.0fs", source.name, self._timeout)
            return [], self._source_error(source, f"Timed out after {self._timeout:.0f}s")
        except Exception as exc:
            logger.error("Error fetching from '%s': %s", source.name, exc)
            return [], self._source_error(source, str(exc))

        normalized: list[NormalizedOccurrence] = []
        for item in raw:
            occurrence = normalize_occurrence(source, item, self._default_tz)
            if occurrence is None or not in_window(occurrence, window_start, window_end):
                continue
            normalized.append(occurrence)

        logger.info(
            "Found %d usable occurrence(s) in '%s' (%d fetched)",
            len(normalized), source.name, len(raw),
        )
        return normalized, None

    @staticmethod
    def _source_error(source: CalendarSource, message: str) -> SourceError:
        return SourceError(source_name=source.name, source_id=source.source_id, error=message)
