"""Tests for eventsync.bot.telegram_bot — command handlers and authorization.

The EventService is mocked; handlers are called directly with fake updates.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from eventsync.bot.telegram_bot import (
    _format_event,
    _parse_role,
    _parse_start,
    cmd_addrole,
    cmd_autosync,
    cmd_calendars,
    cmd_create,
    cmd_delete,
    cmd_deletepreset,
    cmd_events,
    cmd_leave,
    cmd_preset,
    cmd_signup,
    cmd_sync,
)
from eventsync.core.aggregator import SourceError
from eventsync.core.signup import SignupResult, SignupStatus
from eventsync.core.sync_scheduler import AutoSyncStatus, SyncDestination, SyncResult
from eventsync.data.errors import ValidationError
from eventsync.data.models import CalendarSource, Event, Preset, Role

_AUTHORIZED = 12345


def _update(user_id=_AUTHORIZED, chat_id=-100):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_chat.id = chat_id
    update.message.reply_text = AsyncMock()
    return update


def _context(service, args=None):
    context = MagicMock()
    context.args = args or []
    context.bot_data = {"service": service}
    return context


def _event():
    return Event(
        id="evt_abc",
        title="Raid night",
        description="",
        start_time=datetime(2026, 10, 20, 19, 0, tzinfo=timezone.utc),
        duration_minutes=120,
        roles=[Role("Tank", max_slots=1)],
        signups={"Tank": ["12345"]},
    )


def _replies(update):
    return [c.args[0] for c in update.message.reply_text.await_args_list]


class TestParsers:
    def test_parse_role_full(self):
        assert _parse_role("Tank:🛡️:2") == {"name": "Tank", "emoji": "🛡️", "max_slots": 2}

    def test_parse_role_name_only(self):
        assert _parse_role(" Healer ") == {"name": "Healer", "emoji": ""}

    def test_parse_role_bad_slots(self):
        with pytest.raises(ValueError):
            _parse_role("Tank::many")

    def test_parse_start(self):
        start = _parse_start("2026-10-20 19:00")
        assert start.hour == 19
        assert start.tzinfo is not None

    def test_parse_start_invalid(self):
        with pytest.raises(ValueError):
            _parse_start("tomorrow evening")


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_ignored(self):
        service = MagicMock()
        update = _update(user_id=999)
        await cmd_events(update, _context(service))
        update.message.reply_text.assert_not_awaited()
        service.list_upcoming_events.assert_not_called()


class TestEventCommands:
    @pytest.mark.asyncio
    async def test_events_empty(self):
        service = MagicMock()
        service.list_upcoming_events.return_value = []
        update = _update()
        await cmd_events(update, _context(service))
        assert _replies(update) == ["No upcoming events."]
        service.list_upcoming_events.assert_called_once_with("-100")

    @pytest.mark.asyncio
    async def test_events_lists_ids(self):
        service = MagicMock()
        service.list_upcoming_events.return_value = [_event()]
        update = _update()
        await cmd_events(update, _context(service))
        assert "evt_abc" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_create(self):
        service = MagicMock()
        service.create_event.return_value = _event()
        update = _update()
        await cmd_create(update, _context(
            service, "Raid night | 2026-10-20 19:00 | 120 | Tank:🛡️:1, DPS".split(" "),
        ))

        spec = service.create_event.call_args.args[0]
        assert spec["title"] == "Raid night"
        assert spec["duration_minutes"] == 120
        assert spec["roles"] == [
            {"name": "Tank", "emoji": "🛡️", "max_slots": 1},
            {"name": "DPS", "emoji": ""},
        ]
        assert spec["channel_ref"] == "-100"
        assert spec["created_by"] == "12345"
        assert "Event created" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_create_usage(self):
        service = MagicMock()
        update = _update()
        await cmd_create(update, _context(service, ["Raid"]))
        assert "Usage" in _replies(update)[0]
        service.create_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_validation_error(self):
        service = MagicMock()
        service.create_event.side_effect = ValidationError("duration must be >= 0")
        update = _update()
        await cmd_create(update, _context(service, "Raid | 2026-10-20 19:00".split(" ")))
        assert "Couldn't create" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_delete(self):
        service = MagicMock()
        service.delete_event = AsyncMock(return_value=True)
        update = _update()
        await cmd_delete(update, _context(service, ["evt_abc"]))
        service.delete_event.assert_awaited_once_with("evt_abc")
        assert "deleted" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_delete_missing(self):
        service = MagicMock()
        service.delete_event = AsyncMock(return_value=False)
        update = _update()
        await cmd_delete(update, _context(service, ["evt_nope"]))
        assert "not found" in _replies(update)[0]


class TestSignupCommands:
    @pytest.mark.asyncio
    async def test_signup_ok(self):
        service = MagicMock()
        service.signup = AsyncMock(return_value=SignupResult(SignupStatus.OK, _event()))
        update = _update()
        await cmd_signup(update, _context(service, ["evt_abc", "Tank"]))
        service.signup.assert_awaited_once_with("evt_abc", "12345", "Tank")
        assert "Signed up" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_signup_role_full(self):
        service = MagicMock()
        service.signup = AsyncMock(
            return_value=SignupResult(SignupStatus.ROLE_FULL, _event()),
        )
        update = _update()
        await cmd_signup(update, _context(service, ["evt_abc", "Tank"]))
        assert _replies(update) == ["That role is full."]

    @pytest.mark.asyncio
    async def test_signup_multi_word_role(self):
        service = MagicMock()
        service.signup = AsyncMock(
            return_value=SignupResult(SignupStatus.ROLE_NOT_FOUND, _event()),
        )
        update = _update()
        await cmd_signup(update, _context(service, ["evt_abc", "Off", "Tank"]))
        service.signup.assert_awaited_once_with("evt_abc", "12345", "Off Tank")

    @pytest.mark.asyncio
    async def test_leave_not_signed_up(self):
        service = MagicMock()
        service.leave = AsyncMock(
            return_value=SignupResult(SignupStatus.OK, _event(), removed=False),
        )
        update = _update()
        await cmd_leave(update, _context(service, ["evt_abc"]))
        assert "weren't signed up" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_addrole_duplicate(self):
        service = MagicMock()
        service.add_role = AsyncMock(
            return_value=SignupResult(SignupStatus.DUPLICATE_ROLE, _event()),
        )
        update = _update()
        await cmd_addrole(update, _context(service, ["evt_abc", "Tank:🛡️:1"]))
        assert _replies(update) == ["That role already exists on this event."]


class TestSyncCommands:
    @pytest.mark.asyncio
    async def test_sync_reports_source_errors(self):
        service = MagicMock()
        service.trigger_sync = AsyncMock(return_value=SyncResult(
            success=True,
            message="Imported 2 new event(s) from Work, Guild",
            imported_count=2,
            posted_count=2,
            source_errors=[SourceError("Guild", "guild@group", "invalid_grant")],
        ))
        update = _update()
        await cmd_sync(update, _context(service, ["work"]))

        destination, source_filter = service.trigger_sync.await_args.args
        assert destination == SyncDestination(channel_ref="-100", space_ref="-100")
        assert source_filter == "work"
        summary = _replies(update)[-1]
        assert "Imported 2" in summary
        assert "Guild: invalid_grant" in summary

    @pytest.mark.asyncio
    async def test_sync_no_matching_calendar(self):
        service = MagicMock()
        service.trigger_sync = AsyncMock(return_value=SyncResult(
            success=False, message='No calendar found matching "pvp"',
        ))
        update = _update()
        await cmd_sync(update, _context(service, ["pvp"]))
        assert 'No calendar found matching "pvp"' in _replies(update)[-1]

    @pytest.mark.asyncio
    async def test_autosync_on(self):
        service = MagicMock()
        service.start_auto_sync = AsyncMock(return_value=True)
        update = _update()
        await cmd_autosync(update, _context(service, ["on"]))
        service.start_auto_sync.assert_awaited_once()
        assert "enabled" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_autosync_already_on(self):
        service = MagicMock()
        service.start_auto_sync = AsyncMock(return_value=False)
        update = _update()
        await cmd_autosync(update, _context(service, ["on"]))
        assert "already enabled" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_autosync_off(self):
        service = MagicMock()
        service.stop_auto_sync.return_value = True
        update = _update()
        await cmd_autosync(update, _context(service, ["off"]))
        assert "disabled" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_autosync_status_running(self):
        service = MagicMock()
        service.auto_sync_status.return_value = AutoSyncStatus(
            running=True,
            interval_ms=600000,
            destination=SyncDestination(channel_ref="-100"),
        )
        update = _update()
        await cmd_autosync(update, _context(service, ["status"]))
        reply = _replies(update)[0]
        assert "every 10 minutes" in reply
        assert "-100" in reply

    @pytest.mark.asyncio
    async def test_calendars(self):
        service = MagicMock()
        service.list_sources.return_value = [
            CalendarSource("Work", "primary"),
            CalendarSource("Raids", "https://guild.example/raids.ics"),
        ]
        update = _update()
        await cmd_calendars(update, _context(service))
        reply = _replies(update)[0]
        assert "Work (api): primary" in reply
        assert "Raids (feed)" in reply


class TestPresetCommands:
    @pytest.mark.asyncio
    async def test_add_preset(self):
        service = MagicMock()
        service.add_preset.return_value = Preset("raid-night", "Raid Night", duration_minutes=180)
        update = _update()
        await cmd_preset(update, _context(
            service, "add raid-night | Raid Night | 180 | Tank:🛡️:2, Healer | Weekly".split(" "),
        ))

        args, kwargs = service.add_preset.call_args
        assert args == ("raid-night", "Raid Night")
        assert kwargs["duration_minutes"] == 180
        assert kwargs["roles"] == [
            {"name": "Tank", "emoji": "🛡️", "max_slots": 2},
            {"name": "Healer", "emoji": ""},
        ]
        assert kwargs["description"] == "Weekly"
        assert "saved" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_add_preset_rejected(self):
        service = MagicMock()
        service.add_preset.side_effect = ValidationError("Preset 'm5' already exists")
        update = _update()
        await cmd_preset(update, _context(service, "add m5 | Mythic+".split(" ")))
        assert "already exists" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_add_preset_usage(self):
        service = MagicMock()
        update = _update()
        await cmd_preset(update, _context(service, ["add", "m5"]))
        assert "Usage" in _replies(update)[0]
        service.add_preset.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_presets(self):
        service = MagicMock()
        service.search_presets.return_value = [Preset("raid_night", "Raid_Night")]
        update = _update()
        await cmd_preset(update, _context(service, ["find", "raid"]))
        service.search_presets.assert_called_once_with("raid")
        assert "Raid\\_Night" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_deletepreset(self):
        service = MagicMock()
        service.delete_preset.return_value = True
        update = _update()
        await cmd_deletepreset(update, _context(service, ["m5"]))
        service.delete_preset.assert_called_once_with("m5")
        assert "deleted" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_deletepreset_missing(self):
        service = MagicMock()
        service.delete_preset.return_value = False
        update = _update()
        await cmd_deletepreset(update, _context(service, ["nope"]))
        assert "No preset called 'nope'" in _replies(update)[0]


class TestMarkdownEscaping:
    def test_user_text_escaped(self):
        event = _event()
        event.title = "Raid_night *hc*"
        event.description = "Bring [flasks]"
        text = _format_event(event)
        assert "*Raid\\_night \\*hc\\**" in text
        assert "Bring \\[flasks]" in text
        assert "`evt_abc`" in text
