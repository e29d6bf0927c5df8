"""Tests for eventsync.core.event_service — the caller-facing facade."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from eventsync.core.event_service import EventService
from eventsync.core.signup import SignupManager, SignupStatus
from eventsync.core.sync_scheduler import AutoSyncStatus, SyncDestination, SyncResult
from eventsync.data.errors import NotFound, ValidationError
from eventsync.data.models import CalendarSource, RoleSpec

_START = datetime(2026, 10, 20, 19, 0, tzinfo=timezone.utc)
_DEST = SyncDestination(channel_ref="-100", space_ref="guild-1")


@pytest.fixture
def scheduler():
    mock = MagicMock()
    mock.run_cycle = AsyncMock(return_value=SyncResult(success=True, message="ok"))
    mock.start = AsyncMock(return_value=True)
    mock.stop.return_value = True
    mock.status.return_value = AutoSyncStatus(running=False, interval_ms=None)
    return mock


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def service(event_db, preset_db, scheduler, notifier):
    aggregator = MagicMock()
    aggregator.sources = [CalendarSource("Work", "primary")]
    return EventService(
        event_db,
        SignupManager(event_db),
        scheduler,
        aggregator,
        notifier,
        presets=preset_db,
        default_interval_ms=300000,
    )


def _spec(**kwargs):
    spec = {
        "title": "Raid night",
        "start_time": _START,
        "roles": [{"name": "Tank", "max_slots": 1}, {"name": "DPS"}],
        "channel_ref": "-100",
        "space_ref": "guild-1",
    }
    spec.update(kwargs)
    return spec


class TestEvents:
    def test_create_and_get(self, service):
        event = service.create_event(_spec())
        assert service.get_event(event.id).title == "Raid night"

    def test_create_invalid(self, service):
        with pytest.raises(ValidationError):
            service.create_event(_spec(duration_minutes=-10))

    def test_get_missing_raises(self, service):
        with pytest.raises(NotFound):
            service.get_event("evt_missing")

    def test_list_events_sorted(self, service):
        later = service.create_event(_spec(title="Later", start_time=_START + timedelta(days=1)))
        sooner = service.create_event(_spec(title="Sooner"))
        assert [e.id for e in service.list_events("guild-1")] == [sooner.id, later.id]

    def test_list_upcoming(self, service):
        service.create_event(_spec(title="Past", start_time=_START - timedelta(days=3)))
        service.create_event(_spec(title="Next"))
        upcoming = service.list_upcoming_events("guild-1", now=_START - timedelta(days=1))
        assert [e.title for e in upcoming] == ["Next"]

    def test_event_stats(self, service):
        service.create_event(_spec())
        assert service.event_stats("guild-1")["total_events"] == 1


class TestDeleteEvent:
    @pytest.mark.asyncio
    async def test_delete_unposted(self, service, notifier):
        event = service.create_event(_spec())
        assert await service.delete_event(event.id) is True
        notifier.delete_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_posted_withdraws_message(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")

        assert await service.delete_event(event.id) is True
        withdrawn = notifier.delete_post.await_args.args[0]
        assert withdrawn.posted_message_ref == "77"

    @pytest.mark.asyncio
    async def test_withdraw_failure_still_deletes(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")
        notifier.delete_post.side_effect = Exception("message too old")

        assert await service.delete_event(event.id) is True
        assert event_db.get(event.id) is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, service):
        assert await service.delete_event("evt_missing") is False


class TestSignups:
    @pytest.mark.asyncio
    async def test_signup_and_leave(self, service):
        event = service.create_event(_spec())
        assert (await service.signup(event.id, 12345, "Tank")).ok
        assert service.get_event(event.id).signups["Tank"] == ["12345"]
        assert (await service.leave(event.id, 12345)).removed

    @pytest.mark.asyncio
    async def test_role_full(self, service):
        event = service.create_event(_spec())
        await service.signup(event.id, "u1", "Tank")
        assert (await service.signup(event.id, "u2", "Tank")).status is SignupStatus.ROLE_FULL

    @pytest.mark.asyncio
    async def test_add_role_from_mapping(self, service):
        event = service.create_event(_spec())
        result = await service.add_role(event.id, {"name": "Healer", "max_slots": 2})
        assert result.ok
        assert result.event.get_role("Healer").max_slots == 2

    @pytest.mark.asyncio
    async def test_add_role_invalid(self, service):
        event = service.create_event(_spec())
        with pytest.raises(ValidationError):
            await service.add_role(event.id, {"name": "Healer", "max_slots": 0})

    @pytest.mark.asyncio
    async def test_add_duplicate_role(self, service):
        event = service.create_event(_spec())
        result = await service.add_role(event.id, RoleSpec(name="DPS"))
        assert result.status is SignupStatus.DUPLICATE_ROLE


class TestPostedMessageRefresh:
    @pytest.mark.asyncio
    async def test_unposted_event_not_refreshed(self, service, notifier):
        event = service.create_event(_spec())
        await service.signup(event.id, "u1", "Tank")
        notifier.update_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signup_refreshes_posted_counts(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")

        await service.signup(event.id, "u1", "Tank")

        refreshed = notifier.update_post.await_args.args[0]
        assert refreshed.posted_message_ref == "77"
        assert refreshed.signups["Tank"] == ["u1"]

    @pytest.mark.asyncio
    async def test_leave_and_add_role_refresh(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")
        await service.signup(event.id, "u1", "Tank")

        await service.leave(event.id, "u1")
        await service.add_role(event.id, {"name": "Healer"})

        assert notifier.update_post.await_count == 3
        assert notifier.update_post.await_args.args[0].get_role("Healer") is not None

    @pytest.mark.asyncio
    async def test_rejected_changes_do_not_refresh(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")
        await service.signup(event.id, "u1", "Tank")
        notifier.update_post.reset_mock()

        await service.signup(event.id, "u1", "Tank")
        await service.signup(event.id, "u2", "Tank")
        await service.leave(event.id, "u3")
        await service.add_role(event.id, {"name": "DPS"})

        notifier.update_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_signup(self, service, event_db, notifier):
        event = service.create_event(_spec())
        event_db.record_posted_reference(event.id, "77")
        notifier.update_post.side_effect = Exception("message is not modified")

        assert (await service.signup(event.id, "u1", "Tank")).ok
        assert service.get_event(event.id).signups["Tank"] == ["u1"]


class TestPresets:
    def test_create_from_preset(self, service, preset_db):
        preset_db.add_preset(
            "raid-night", "Raid Night", duration_minutes=180, description="Weekly clear",
            roles=[RoleSpec(name="Tank", max_slots=2), RoleSpec(name="Healer")],
        )
        event = service.create_from_preset(
            "raid-night", _START, channel_ref="-100", space_ref="guild-1", created_by="12345",
        )
        assert event.title == "Raid Night"
        assert event.description == "Weekly clear"
        assert event.duration_minutes == 180
        assert [r.name for r in event.roles] == ["Tank", "Healer"]
        assert event.signups == {"Tank": [], "Healer": []}
        assert event.created_by == "12345"

    def test_create_from_preset_custom_title(self, service, preset_db):
        preset_db.add_preset("m5", "Mythic+")
        event = service.create_from_preset("m5", _START, title="Late keys")
        assert event.title == "Late keys"

    def test_unknown_preset(self, service):
        with pytest.raises(NotFound):
            service.create_from_preset("nope", _START)

    def test_list_presets(self, service, preset_db):
        preset_db.add_preset("m5", "Mythic+")
        assert [p.key for p in service.list_presets()] == ["m5"]

    def test_add_preset_with_role_mappings(self, service):
        preset = service.add_preset(
            "Raid-Night", "Raid Night", duration_minutes=180,
            roles=[{"name": "Tank", "emoji": "🛡️", "max_slots": 2}, {"name": "Healer"}],
        )
        assert preset.key == "raid-night"
        assert service.get_preset("raid-night").roles[0].max_slots == 2

    def test_add_preset_invalid_key(self, service):
        with pytest.raises(ValidationError):
            service.add_preset("raid night!", "Raid")

    def test_add_preset_duplicate(self, service):
        service.add_preset("m5", "Mythic+")
        with pytest.raises(ValidationError):
            service.add_preset("m5", "Mythic+ again")

    def test_delete_preset(self, service):
        service.add_preset("m5", "Mythic+")
        assert service.delete_preset("M5") is True
        assert service.delete_preset("m5") is False
        with pytest.raises(NotFound):
            service.get_preset("m5")

    def test_search_presets(self, service):
        service.add_preset("raid-night", "Raid Night")
        service.add_preset("m5", "Mythic+")
        assert [p.key for p in service.search_presets("RAID")] == ["raid-night"]

    def test_presets_not_configured(self, event_db, scheduler, notifier):
        service = EventService(event_db, SignupManager(event_db), scheduler, MagicMock(), notifier)
        with pytest.raises(RuntimeError):
            service.list_presets()


class TestSync:
    @pytest.mark.asyncio
    async def test_trigger_sync(self, service, scheduler):
        result = await service.trigger_sync(_DEST, "work")
        assert result.success
        scheduler.run_cycle.assert_awaited_once_with(_DEST, source_filter="work")

    @pytest.mark.asyncio
    async def test_start_auto_sync_default_interval(self, service, scheduler):
        assert await service.start_auto_sync(_DEST) is True
        scheduler.start.assert_awaited_once_with(_DEST, 300000)

    @pytest.mark.asyncio
    async def test_start_auto_sync_explicit_interval(self, service, scheduler):
        await service.start_auto_sync(_DEST, 60000)
        scheduler.start.assert_awaited_once_with(_DEST, 60000)

    def test_stop_and_status(self, service, scheduler):
        assert service.stop_auto_sync() is True
        assert service.auto_sync_status().running is False

    def test_list_sources(self, service):
        assert [s.name for s in service.list_sources()] == ["Work"]
