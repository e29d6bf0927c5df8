"""Tests for eventsync.adapters.telegram_notifier — posting and withdrawing events."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

from telegram.error import TelegramError

from eventsync.adapters.telegram_notifier import TelegramNotifier, format_event
from eventsync.data.models import Event, EventOrigin, ImportOrigin, Role
from eventsync.ports.notification_port import PostError


def _event(**kwargs):
    defaults = dict(
        id="imp_0123456789abcdef",
        title="Raid night",
        description="Bring flasks",
        start_time=datetime(2026, 10, 20, 19, 0, tzinfo=timezone.utc),
        duration_minutes=120,
        roles=[Role("Tank", "🛡️", 2), Role("DPS")],
        signups={"Tank": ["u1"], "DPS": []},
        origin=EventOrigin.IMPORTED,
        imported=ImportOrigin("Work", "primary", "e1", "https://calendar/e1"),
        channel_ref="-100",
    )
    defaults.update(kwargs)
    return Event(**defaults)


def _bot(message_id=555):
    bot = MagicMock()
    bot.send_message = AsyncMock(return_value=MagicMock(message_id=message_id))
    bot.delete_message = AsyncMock()
    bot.edit_message_text = AsyncMock()
    return bot


class TestFormatEvent:
    def test_includes_roles_and_link(self):
        text = format_event(_event())
        assert "Raid night" in text
        assert "🛡️ Tank: 1/2" in text
        assert "DPS: 0" in text
        assert "https://calendar/e1" in text
        assert "imp_0123456789abcdef" in text

    def test_local_time(self):
        text = format_event(_event(), ZoneInfo("Asia/Jerusalem"))
        assert "22:00" in text


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_post_returns_message_id(self):
        bot = _bot()
        ref = await TelegramNotifier(bot).post_event(_event())
        assert ref == "555"
        assert bot.send_message.await_args.kwargs["chat_id"] == "-100"

    @pytest.mark.asyncio
    async def test_post_without_channel(self):
        with pytest.raises(PostError):
            await TelegramNotifier(_bot()).post_event(_event(channel_ref=None))

    @pytest.mark.asyncio
    async def test_telegram_error_becomes_post_error(self):
        bot = _bot()
        bot.send_message.side_effect = TelegramError("Chat not found")
        with pytest.raises(PostError, match="Chat not found"):
            await TelegramNotifier(bot).post_event(_event())

    @pytest.mark.asyncio
    async def test_delete_post(self):
        bot = _bot()
        await TelegramNotifier(bot).delete_post(_event(posted_message_ref="555"))
        bot.delete_message.assert_awaited_once_with(chat_id="-100", message_id=555)

    @pytest.mark.asyncio
    async def test_delete_unposted_is_noop(self):
        bot = _bot()
        await TelegramNotifier(bot).delete_post(_event())
        bot.delete_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_failure(self):
        bot = _bot()
        bot.delete_message.side_effect = TelegramError("Message can't be deleted")
        with pytest.raises(PostError):
            await TelegramNotifier(bot).delete_post(_event(posted_message_ref="555"))

    @pytest.mark.asyncio
    async def test_update_post_rerenders_counts(self):
        bot = _bot()
        event = _event(posted_message_ref="555", signups={"Tank": ["u1", "u2"], "DPS": []})
        await TelegramNotifier(bot).update_post(event)

        kwargs = bot.edit_message_text.await_args.kwargs
        assert kwargs["chat_id"] == "-100"
        assert kwargs["message_id"] == 555
        assert "🛡️ Tank: 2/2" in kwargs["text"]

    @pytest.mark.asyncio
    async def test_update_unposted_is_noop(self):
        bot = _bot()
        await TelegramNotifier(bot).update_post(_event())
        bot.edit_message_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_failure(self):
        bot = _bot()
        bot.edit_message_text.side_effect = TelegramError("Message to edit not found")
        with pytest.raises(PostError):
            await TelegramNotifier(bot).update_post(_event(posted_message_ref="555"))
