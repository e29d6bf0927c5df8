"""
EventSync — Calendar Sync Scheduler.

One cycle: aggregate every calendar source → import new occurrences into
EventDB → announce each new event through the notifier → remember the
posted message reference.

Guarantees:
- at most one cycle in flight; a tick that finds a cycle running is skipped;
- an event whose posted_message_ref is set is never posted again;
- a failed post leaves the event stored and unposted, and later cycles retry
  it until it starts.

Periodic runs use python-telegram-bot's JobQueue, the same scheduler the bot
uses for everything else. The scheduler depends on the NotificationPort
protocol, not on Telegram.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from telegram.ext import ContextTypes, Job, JobQueue

    from eventsync.core.aggregator import CalendarAggregator, SourceError
    from eventsync.data.db import EventDB
    from eventsync.data.models import Event
    from eventsync.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_JOB_NAME = "calendar_autosync"
DEFAULT_WINDOW_SECONDS = 168 * 60 * 60


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class SyncDestination:
    """Where imported events are announced (chat id, optional group/space)."""

    channel_ref: str
    space_ref: str | None = None


@dataclass
class SyncResult:
    success: bool
    message: str
    imported_count: int = 0
    posted_count: int = 0
    source_errors: list[SourceError] = field(default_factory=list)
    skipped: bool = False


@dataclass
class AutoSyncStatus:
    running: bool
    interval_ms: int | None
    destination: SyncDestination | None = None
    cycle_in_progress: bool = False
    last_result: SyncResult | None = None


class SyncScheduler:
    """Owns the auto-sync timer and the fetch/import/post cycle."""

    def __init__(
        self,
        aggregator: CalendarAggregator,
        store: EventDB,
        notifier: NotificationPort,
        job_queue: JobQueue | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        retry_unposted: bool = True,
    ) -> None:
        self._aggregator = aggregator
        self._store = store
        self._notifier = notifier
        self._job_queue = job_queue
        self._window_seconds = window_seconds
        self._retry_unposted = retry_unposted

        self._state = SchedulerState.IDLE
        self._job: Job | None = None
        self._active = False
        # Bumped by every start() and stop(); only the latest start() arms a job
        self._generation = 0
        self._interval_ms: int | None = None
        self._destination: SyncDestination | None = None
        self._last_result: SyncResult | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._active

    def attach_job_queue(self, job_queue: JobQueue) -> None:
        self._job_queue = job_queue

    # -- One cycle ----------------------------------------------------------

    async def run_cycle(
        self,
        destination: SyncDestination,
        source_filter: str | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        """Run one fetch → import → post cycle unless one is already running."""
        if self._state is SchedulerState.RUNNING:
            logger.info("Sync cycle already in progress, skipping")
            return SyncResult(
                success=False,
                message="A sync is already in progress",
                skipped=True,
            )

        self._state = SchedulerState.RUNNING
        try:
            result = await self._run_cycle(destination, source_filter, now)
        finally:
            self._state = SchedulerState.IDLE

        self._last_result = result
        return result

    async def _run_cycle(
        self,
        destination: SyncDestination,
        source_filter: str | None,
        now: datetime | None,
    ) -> SyncResult:
        now = now or datetime.now(timezone.utc)
        aggregate = await self._aggregator.fetch_all(
            self._window_seconds, source_filter=source_filter, now=now,
        )
        if not aggregate.success:
            logger.warning("Sync aborted: %s", aggregate.message)
            return SyncResult(success=False, message=aggregate.message)

        new_events: list[Event] = []
        for occurrence in aggregate.occurrences:
            event = self._store.import_if_new(
                occurrence,
                channel_ref=destination.channel_ref,
                space_ref=destination.space_ref,
            )
            if event is not None:
                new_events.append(event)

        to_post = list(new_events)
        if self._retry_unposted:
            new_ids = {e.id for e in new_events}
            for event in self._store.list_unposted_imports(destination.space_ref):
                if event.id in new_ids or event.start_time <= now:
                    continue
                to_post.append(event)

        posted = 0
        for event in to_post:
            if await self._post(event):
                posted += 1

        message = (
            f"Imported {len(new_events)} new event(s) from "
            f"{', '.join(aggregate.sources)}"
        )
        if aggregate.source_errors:
            failed = ", ".join(e.source_name for e in aggregate.source_errors)
            message += f". Failed sources: {failed}"

        logger.info(
            "Sync cycle done: %d fetched, %d imported, %d posted, %d source error(s)",
            len(aggregate.occurrences), len(new_events), posted,
            len(aggregate.source_errors),
        )
        return SyncResult(
            success=True,
            message=message,
            imported_count=len(new_events),
            posted_count=posted,
            source_errors=list(aggregate.source_errors),
        )

    async def _post(self, event: Event) -> bool:
        """Announce one event. Returns True if a post went out."""
        # Re-read: the event may have been posted or deleted meanwhile
        current = self._store.get(event.id)
        if current is None or current.is_posted:
            return False
        if not current.channel_ref:
            logger.warning("Event %s has no channel to post to", current.id)
            return False

        try:
            ref = await self._notifier.post_event(current)
        except Exception as exc:
            logger.error("Failed to post event %s '%s': %s", current.id, current.title, exc)
            return False

        self._store.record_posted_reference(current.id, ref)
        return True

    # -- Auto-sync lifecycle ------------------------------------------------

    async def start(self, destination: SyncDestination, interval_ms: int) -> bool:
        """Run one cycle now, then every interval_ms.

        Returns False (and does nothing) if auto-sync is already on. A failed
        first cycle is logged and the timer is armed anyway.
        """
        if self._active:
            logger.info("Auto-sync already running, ignoring start")
            return False
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self._job_queue is None:
            raise RuntimeError("No job queue attached to the sync scheduler")

        self._active = True
        self._generation += 1
        generation = self._generation
        self._destination = destination
        self._interval_ms = interval_ms

        try:
            await self.run_cycle(destination)
        except Exception as exc:
            logger.error("Initial auto-sync cycle failed: %s", exc)

        # stop(), or stop() then another start(), may have run meanwhile
        if not self._active or generation != self._generation:
            return True

        seconds = interval_ms / 1000
        self._job = self._job_queue.run_repeating(
            self._tick, interval=seconds, first=seconds, name=_JOB_NAME,
        )
        logger.info(
            "Auto-sync started for channel %s every %d minute(s)",
            destination.channel_ref, interval_ms // 60000,
        )
        return True

    async def _tick(self, context: ContextTypes.DEFAULT_TYPE | None = None) -> None:
        if not self._active or self._destination is None:
            return
        if self._state is SchedulerState.RUNNING:
            logger.info("Previous sync still running, skipping this tick")
            return
        try:
            await self.run_cycle(self._destination)
        except Exception as exc:
            logger.error("Auto-sync cycle failed: %s", exc)

    def stop(self) -> bool:
        """Cancel future ticks. A cycle already in flight still completes."""
        if not self._active:
            return False
        self._active = False
        self._generation += 1
        if self._job is not None:
            self._job.schedule_removal()
            self._job = None
        logger.info("Auto-sync stopped")
        return True

    def status(self) -> AutoSyncStatus:
        return AutoSyncStatus(
            running=self._active,
            interval_ms=self._interval_ms,
            destination=self._destination if self._active else None,
            cycle_in_progress=self._state is SchedulerState.RUNNING,
            last_result=self._last_result,
        )
