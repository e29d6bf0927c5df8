"""
EventSync — UI-Agnostic Event Service.

The one entry point for callers (Telegram commands today, anything else
later): event CRUD, role signups, presets and calendar sync. It wires the
store, the signup manager and the sync scheduler together and returns
domain objects or typed results. Rendering is the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

import pydantic

from eventsync.core.signup import SignupStatus
from eventsync.data.errors import NotFound, ValidationError
from eventsync.data.models import EventSpec, RoleSpec

if TYPE_CHECKING:
    from eventsync.core.aggregator import CalendarAggregator
    from eventsync.core.signup import SignupManager, SignupResult
    from eventsync.core.sync_scheduler import (
        AutoSyncStatus,
        SyncDestination,
        SyncResult,
        SyncScheduler,
    )
    from eventsync.data.db import EventDB, PresetDB
    from eventsync.data.models import CalendarSource, Event, Preset
    from eventsync.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def _role_spec(role: RoleSpec | Mapping[str, Any]) -> RoleSpec:
    if isinstance(role, RoleSpec):
        return role
    try:
        return RoleSpec.model_validate(dict(role))
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


class EventService:
    """Facade over EventDB, SignupManager and SyncScheduler."""

    def __init__(
        self,
        store: EventDB,
        signups: SignupManager,
        scheduler: SyncScheduler,
        aggregator: CalendarAggregator,
        notifier: NotificationPort,
        presets: PresetDB | None = None,
        default_interval_ms: int = 60 * 60 * 1000,
    ) -> None:
        self._store = store
        self._signups = signups
        self._scheduler = scheduler
        self._aggregator = aggregator
        self._notifier = notifier
        self._presets = presets
        self._default_interval_ms = default_interval_ms

    # -- Events -------------------------------------------------------------

    def create_event(self, spec: EventSpec | Mapping[str, Any]) -> Event:
        """Create a manual event. Raises ValidationError on bad input."""
        return self._store.create(spec)

    def get_event(self, event_id: str) -> Event:
        event = self._store.get(event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        return event

    def list_events(self, space_ref: str | None = None) -> list[Event]:
        return sorted(self._store.list_by_space(space_ref), key=lambda e: e.start_time)

    def list_upcoming_events(
        self, space_ref: str | None = None, now: datetime | None = None,
    ) -> list[Event]:
        return self._store.list_upcoming(space_ref, now=now)

    async def delete_event(self, event_id: str) -> bool:
        """Delete an event and withdraw its announcement if there was one.

        A failure to withdraw the message is logged; the event is deleted anyway.
        """
        event = self._store.get(event_id)
        if event is None:
            return False

        deleted = self._store.delete(event_id)
        self._signups.forget(event_id)

        if deleted and event.is_posted:
            try:
                await self._notifier.delete_post(event)
            except Exception as exc:
                logger.warning(
                    "Event %s deleted but its message %s could not be removed: %s",
                    event_id, event.posted_message_ref, exc,
                )
        return deleted

    def event_stats(self, space_ref: str | None = None) -> dict:
        return self._store.stats(space_ref)

    # -- Roles and signups --------------------------------------------------

    async def add_role(
        self, event_id: str, role: RoleSpec | Mapping[str, Any],
    ) -> SignupResult:
        result = self._signups.add_role(event_id, _role_spec(role))
        if result.status is SignupStatus.OK:
            await self._refresh_post(result.event)
        return result

    async def signup(self, event_id: str, user_id: str, role_name: str) -> SignupResult:
        result = self._signups.signup(event_id, str(user_id), role_name)
        if result.status is SignupStatus.OK:
            await self._refresh_post(result.event)
        return result

    async def leave(self, event_id: str, user_id: str) -> SignupResult:
        result = self._signups.leave(event_id, str(user_id))
        if result.removed:
            await self._refresh_post(result.event)
        return result

    async def _refresh_post(self, event: Event | None) -> None:
        """Bring a posted announcement's role counts up to date."""
        if event is None or not event.is_posted:
            return
        try:
            await self._notifier.update_post(event)
        except Exception as exc:
            logger.warning(
                "Could not refresh message %s for event %s: %s",
                event.posted_message_ref, event.id, exc,
            )

    # -- Presets ------------------------------------------------------------

    def _require_presets(self) -> PresetDB:
        if self._presets is None:
            raise RuntimeError("Presets are not configured")
        return self._presets

    def list_presets(self) -> list[Preset]:
        return self._require_presets().list_presets()

    def get_preset(self, key: str) -> Preset:
        preset = self._require_presets().get_preset(key)
        if preset is None:
            raise NotFound(f"Preset '{key}' not found")
        return preset

    def search_presets(self, query: str) -> list[Preset]:
        return self._require_presets().search_presets(query)

    def add_preset(
        self,
        key: str,
        name: str,
        duration_minutes: int = 60,
        description: str = "",
        max_participants: int = 0,
        roles: list[RoleSpec | Mapping[str, Any]] | None = None,
    ) -> Preset:
        """Save a reusable event template. Raises ValidationError on bad input."""
        return self._require_presets().add_preset(
            key.strip().lower(),
            name,
            duration_minutes=duration_minutes,
            description=description,
            max_participants=max_participants,
            roles=[_role_spec(r) for r in roles or []],
        )

    def delete_preset(self, key: str) -> bool:
        return self._require_presets().delete_preset(key.strip().lower())

    def create_from_preset(
        self,
        key: str,
        start_time: datetime | str,
        title: str | None = None,
        channel_ref: str | None = None,
        space_ref: str | None = None,
        created_by: str = "unknown",
    ) -> Event:
        """Create a manual event from a stored preset's duration and roles."""
        preset = self.get_preset(key)
        return self._store.create({
            "title": title or preset.name,
            "description": preset.description,
            "start_time": start_time,
            "duration_minutes": preset.duration_minutes,
            "max_participants": preset.max_participants,
            "roles": [r.to_dict() for r in preset.roles],
            "channel_ref": channel_ref,
            "space_ref": space_ref,
            "created_by": created_by,
        })

    # -- Calendar sync ------------------------------------------------------

    def list_sources(self) -> list[CalendarSource]:
        return self._aggregator.sources

    async def trigger_sync(
        self, destination: SyncDestination, source_filter: str | None = None,
    ) -> SyncResult:
        """One manual cycle through the same path auto-sync uses."""
        return await self._scheduler.run_cycle(destination, source_filter=source_filter)

    async def start_auto_sync(
        self, destination: SyncDestination, interval_ms: int | None = None,
    ) -> bool:
        return await self._scheduler.start(
            destination, interval_ms or self._default_interval_ms,
        )

    def stop_auto_sync(self) -> bool:
        return self._scheduler.stop()

    def auto_sync_status(self) -> AutoSyncStatus:
        return self._scheduler.status()
