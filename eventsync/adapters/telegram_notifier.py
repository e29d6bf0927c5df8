"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance: events are announced as plain-text messages
in the chat named by event.channel_ref, and the message id is the posted
reference.
"""

from __future__ import annotations

import logging
from zoneinfo import ZoneInfo

from telegram import Bot
from telegram.error import TelegramError

from eventsync.data.models import Event
from eventsync.ports.notification_port import PostError

logger = logging.getLogger(__name__)


def format_event(event: Event, tz: ZoneInfo | None = None) -> str:
    """Plain-text announcement of an event and its roles."""
    start = event.start_time.astimezone(tz) if tz else event.start_time
    lines = [
        f"📅 {event.title}",
        f"🕒 {start:%a %d %b %Y %H:%M} ({event.duration_minutes} min)",
    ]
    if event.description:
        lines.append(event.description)
    for role in event.roles:
        members = event.signups.get(role.name, [])
        cap = f"/{role.max_slots}" if role.max_slots else ""
        label = f"{role.emoji} {role.name}".strip()
        lines.append(f"{label}: {len(members)}{cap}")
    if event.imported and event.imported.link:
        lines.append(event.imported.link)
    lines.append(f"ID: {event.id}")
    return "\n".join(lines)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot, tz: ZoneInfo | None = None) -> None:
        self._bot = bot
        self._tz = tz

    async def post_event(self, event: Event) -> str:
        if not event.channel_ref:
            raise PostError(f"Event {event.id} has no channel to post to")
        try:
            message = await self._bot.send_message(
                chat_id=event.channel_ref, text=format_event(event, self._tz),
            )
        except TelegramError as exc:
            raise PostError(f"Telegram rejected post of {event.id}: {exc}") from exc
        return str(message.message_id)

    async def update_post(self, event: Event) -> None:
        """Re-render a posted announcement with the event's current signups."""
        if not event.channel_ref or not event.posted_message_ref:
            return
        try:
            await self._bot.edit_message_text(
                text=format_event(event, self._tz),
                chat_id=event.channel_ref,
                message_id=int(event.posted_message_ref),
            )
        except TelegramError as exc:
            raise PostError(
                f"Could not update message {event.posted_message_ref}: {exc}"
            ) from exc

    async def delete_post(self, event: Event) -> None:
        if not event.channel_ref or not event.posted_message_ref:
            return
        try:
            await self._bot.delete_message(
                chat_id=event.channel_ref, message_id=int(event.posted_message_ref),
            )
        except TelegramError as exc:
            raise PostError(
                f"Could not delete message {event.posted_message_ref}: {exc}"
            ) from exc
        logger.info("Deleted message %s for event %s", event.posted_message_ref, event.id)
