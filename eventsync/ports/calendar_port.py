"""Calendar source port — abstract interface for external calendars.

The aggregator depends on this protocol, never on a specific provider.
Adapters return raw occurrences; normalization happens once, in the core.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from eventsync.core.normalizer import RawOccurrence
    from eventsync.data.models import CalendarSource


class CalendarSourceError(Exception):
    """Raised when a calendar source cannot be read (auth, network, bad document)."""


class CalendarSourcePort(Protocol):
    """Abstract calendar source used by the aggregator."""

    async def fetch_window(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawOccurrence]: ...
