"""
EventSync — Telegram Bot.

Thin command layer over EventService: every handler parses its arguments,
calls the service, and renders the result as text. The chat a command is sent
from is where imported events get announced.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes
from telegram.helpers import escape_markdown

from eventsync.config import settings
from eventsync.core.signup import SignupStatus
from eventsync.core.sync_scheduler import SyncDestination
from eventsync.data.errors import NotFound, ValidationError

if TYPE_CHECKING:
    from eventsync.core.event_service import EventService
    from eventsync.data.models import Event

logger = logging.getLogger(__name__)

_DATE_FORMAT = "%Y-%m-%d %H:%M"

_SIGNUP_MESSAGES = {
    SignupStatus.EVENT_NOT_FOUND: "Event not found. Use /events to see IDs.",
    SignupStatus.ROLE_NOT_FOUND: "That role doesn't exist on this event.",
    SignupStatus.ROLE_FULL: "That role is full.",
    SignupStatus.DUPLICATE_ROLE: "That role already exists on this event.",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers; the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(context: ContextTypes.DEFAULT_TYPE) -> EventService:
    return context.bot_data["service"]


def _space_ref(chat_id: int | str) -> str:
    return settings.DEFAULT_SPACE or str(chat_id)


def _destination(update: Update) -> SyncDestination:
    chat_id = update.effective_chat.id
    return SyncDestination(channel_ref=str(chat_id), space_ref=_space_ref(chat_id))


def _parse_start(text: str) -> datetime:
    """'YYYY-MM-DD HH:MM' in the configured timezone."""
    naive = datetime.strptime(text.strip(), _DATE_FORMAT)
    return naive.replace(tzinfo=ZoneInfo(settings.TIMEZONE))


def _parse_role(text: str) -> dict:
    """'Tank:🛡️:2' → name, optional emoji, optional slot limit."""
    name, _, rest = text.strip().partition(":")
    emoji, _, slots = rest.partition(":")
    role: dict = {"name": name, "emoji": emoji.strip()}
    if slots.strip():
        role["max_slots"] = int(slots)
    return role


def _md(text: str) -> str:
    """Escape user-supplied text for parse_mode="Markdown"."""
    return escape_markdown(text)


def _format_event(event: Event) -> str:
    tz = ZoneInfo(settings.TIMEZONE)
    start = event.start_time.astimezone(tz)
    lines = [
        f"*{_md(event.title)}*  `{event.id}`",
        f"{start:%a %d %b %H:%M} ({event.duration_minutes} min)",
    ]
    if event.description:
        lines.append(_md(event.description))
    for role in event.roles:
        members = event.signups.get(role.name, [])
        cap = f"/{role.max_slots}" if role.max_slots else ""
        who = _md(", ".join(members)) if members else "—"
        lines.append(f"{role.emoji} {_md(role.name)} ({len(members)}{cap}): {who}".strip())
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *EventSync*!\n\n"
        "I keep this chat's events in sync with your calendars:\n"
        "• /events lists what's coming up\n"
        "• /signup <id> <role> puts you on an event\n"
        "• /sync imports new calendar events now\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/events — Upcoming events\n"
        "/event <id> — Event details and signups\n"
        "/create <title> | YYYY-MM-DD HH:MM | <minutes> | Role:emoji:slots, ...\n"
        "/preset [<key> YYYY-MM-DD HH:MM] — List presets or create from one\n"
        "/preset add <key> | <name> | <minutes> | <roles> | <description>\n"
        "/preset find <text> — Search presets\n"
        "/deletepreset <key> — Delete a preset\n"
        "/delete <id> — Delete an event\n"
        "/addrole <id> <Role:emoji:slots> — Add a role\n"
        "/signup <id> <role> — Sign up (moves you from any other role)\n"
        "/leave <id> — Leave an event\n"
        "/sync [calendar] — Import from calendars now\n"
        "/autosync on|off|status — Periodic sync to this chat\n"
        "/calendars — Configured calendars\n"
        "/help — Show this message",
    )


@authorized_only
async def cmd_events(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /events — upcoming events in this chat's space."""
    service = _service(context)
    events = service.list_upcoming_events(_space_ref(update.effective_chat.id))
    if not events:
        await update.message.reply_text("No upcoming events.")
        return

    tz = ZoneInfo(settings.TIMEZONE)
    lines = ["*Upcoming events:*\n"]
    for ev in events:
        start = ev.start_time.astimezone(tz)
        lines.append(f"`{ev.id}` — {start:%d %b %H:%M}  {_md(ev.title)} ({ev.signup_count()})")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_event(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /event <id> — one event in detail."""
    if not context.args:
        await update.message.reply_text("Usage: /event <event_id>")
        return
    try:
        event = _service(context).get_event(context.args[0])
    except NotFound:
        await update.message.reply_text("Event not found. Use /events to see IDs.")
        return
    await update.message.reply_text(_format_event(event), parse_mode="Markdown")


@authorized_only
async def cmd_create(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /create <title> | <start> | <minutes> | <roles>."""
    parts = [p.strip() for p in " ".join(context.args or []).split("|")]
    if len(parts) < 2 or not parts[0]:
        await update.message.reply_text(
            "Usage: /create <title> | YYYY-MM-DD HH:MM | <minutes> | Tank:🛡️:2, Healer"
        )
        return

    chat_id = update.effective_chat.id
    try:
        spec = {
            "title": parts[0],
            "start_time": _parse_start(parts[1]),
            "duration_minutes": int(parts[2]) if len(parts) > 2 and parts[2] else 60,
            "roles": [_parse_role(r) for r in parts[3].split(",") if r.strip()]
            if len(parts) > 3 else [],
            "channel_ref": str(chat_id),
            "space_ref": _space_ref(chat_id),
            "created_by": str(update.effective_user.id),
        }
        event = _service(context).create_event(spec)
    except (ValueError, ValidationError) as exc:
        logger.info("/create rejected: %s", exc)
        await update.message.reply_text(f"Couldn't create the event: {exc}")
        return

    await update.message.reply_text(
        "✅ Event created.\n\n" + _format_event(event), parse_mode="Markdown",
    )


@authorized_only
async def cmd_preset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /preset.

    /preset                      list presets
    /preset find <text>          search by key or name
    /preset add <key> | <name> | <minutes> | <roles> | <description>
    /preset <key> <start>        create an event from a preset
    """
    service = _service(context)
    args = context.args or []

    if not args or args[0].lower() == "find":
        query = " ".join(args[1:])
        presets = service.search_presets(query) if query else service.list_presets()
        if not presets:
            await update.message.reply_text(
                f"No presets matching '{query}'." if query else "No presets saved."
            )
            return
        lines = ["*Presets:*\n"]
        for p in presets:
            roles = ", ".join(r.name for r in p.roles) or "no roles"
            lines.append(
                f"`{p.key}` — {_md(p.name)} ({p.duration_minutes} min, {_md(roles)})"
            )
        await update.message.reply_text("\n".join(lines), parse_mode="Markdown")
        return

    if args[0].lower() == "add":
        await _add_preset(update, service, " ".join(args[1:]))
        return

    if len(args) < 3:
        await update.message.reply_text("Usage: /preset <key> YYYY-MM-DD HH:MM")
        return

    chat_id = update.effective_chat.id
    try:
        event = service.create_from_preset(
            args[0],
            _parse_start(" ".join(args[1:3])),
            channel_ref=str(chat_id),
            space_ref=_space_ref(chat_id),
            created_by=str(update.effective_user.id),
        )
    except NotFound:
        await update.message.reply_text(f"No preset called '{args[0]}'.")
        return
    except (ValueError, ValidationError) as exc:
        await update.message.reply_text(f"Couldn't create the event: {exc}")
        return

    await update.message.reply_text(
        "✅ Event created from preset.\n\n" + _format_event(event), parse_mode="Markdown",
    )


async def _add_preset(update: Update, service: EventService, text: str) -> None:
    parts = [p.strip() for p in text.split("|")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        await update.message.reply_text(
            "Usage: /preset add <key> | <name> | <minutes> | Tank:🛡️:2, Healer | <description>"
        )
        return
    try:
        preset = service.add_preset(
            parts[0],
            parts[1],
            duration_minutes=int(parts[2]) if len(parts) > 2 and parts[2] else 60,
            roles=[_parse_role(r) for r in parts[3].split(",") if r.strip()]
            if len(parts) > 3 else [],
            description=parts[4] if len(parts) > 4 else "",
        )
    except (ValueError, ValidationError) as exc:
        logger.info("/preset add rejected: %s", exc)
        await update.message.reply_text(f"Couldn't save the preset: {exc}")
        return
    await update.message.reply_text(
        f"✅ Preset `{preset.key}` saved. Use it with /preset {preset.key} YYYY-MM-DD HH:MM",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_deletepreset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletepreset <key>."""
    if not context.args:
        await update.message.reply_text("Usage: /deletepreset <key>")
        return
    key = context.args[0]
    if _service(context).delete_preset(key):
        await update.message.reply_text(f"🗑️ Preset '{key}' deleted.")
    else:
        await update.message.reply_text(f"No preset called '{key}'.")


@authorized_only
async def cmd_delete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /delete <id>."""
    if not context.args:
        await update.message.reply_text("Usage: /delete <event_id>")
        return
    deleted = await _service(context).delete_event(context.args[0])
    if deleted:
        await update.message.reply_text("🗑️ Event deleted.")
    else:
        await update.message.reply_text("Event not found. Use /events to see IDs.")


@authorized_only
async def cmd_addrole(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addrole <id> <Role:emoji:slots>."""
    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text("Usage: /addrole <event_id> <Role:emoji:slots>")
        return
    try:
        result = await _service(context).add_role(args[0], _parse_role(" ".join(args[1:])))
    except (ValueError, ValidationError) as exc:
        await update.message.reply_text(f"Invalid role: {exc}")
        return

    if not result.ok:
        await update.message.reply_text(_SIGNUP_MESSAGES[result.status])
        return
    await update.message.reply_text(
        "✅ Role added.\n\n" + _format_event(result.event), parse_mode="Markdown",
    )


@authorized_only
async def cmd_signup(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /signup <id> <role>."""
    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text("Usage: /signup <event_id> <role>")
        return

    result = await _service(context).signup(
        args[0], str(update.effective_user.id), " ".join(args[1:]),
    )
    if result.status is SignupStatus.ALREADY_SIGNED_UP:
        await update.message.reply_text("You're already signed up for that role.")
        return
    if not result.ok:
        await update.message.reply_text(_SIGNUP_MESSAGES[result.status])
        return
    await update.message.reply_text(
        "✅ Signed up.\n\n" + _format_event(result.event), parse_mode="Markdown",
    )


@authorized_only
async def cmd_leave(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /leave <id>."""
    if not context.args:
        await update.message.reply_text("Usage: /leave <event_id>")
        return

    result = await _service(context).leave(context.args[0], str(update.effective_user.id))
    if result.status is SignupStatus.EVENT_NOT_FOUND:
        await update.message.reply_text(_SIGNUP_MESSAGES[result.status])
    elif result.removed:
        await update.message.reply_text("👋 You left the event.")
    else:
        await update.message.reply_text("You weren't signed up for that event.")


@authorized_only
async def cmd_sync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /sync [calendar] — one manual sync into this chat."""
    source_filter = " ".join(context.args) if context.args else None
    await update.message.reply_text("🔄 Syncing calendars...")

    result = await _service(context).trigger_sync(_destination(update), source_filter)
    if result.skipped:
        await update.message.reply_text("A sync is already running. Try again shortly.")
        return
    if not result.success:
        await update.message.reply_text(f"❌ {result.message}")
        return

    lines = [f"✅ {result.message}", f"Posted: {result.posted_count}"]
    for err in result.source_errors:
        lines.append(f"⚠️ {err.source_name}: {err.error}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_autosync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /autosync on|off|status."""
    service = _service(context)
    action = context.args[0].lower() if context.args else "status"
    minutes = settings.SYNC_INTERVAL_MS // 60000

    if action == "on":
        started = await service.start_auto_sync(_destination(update), settings.SYNC_INTERVAL_MS)
        if not started:
            await update.message.reply_text("ℹ️ Auto-sync is already enabled.")
            return
        await update.message.reply_text(
            f"✅ Auto-sync enabled. Calendars are synced every {minutes} minutes "
            "and new events appear in this chat."
        )
    elif action == "off":
        if not service.stop_auto_sync():
            await update.message.reply_text("ℹ️ Auto-sync is already disabled.")
            return
        await update.message.reply_text(
            "✅ Auto-sync disabled. You can still sync manually with /sync."
        )
    elif action == "status":
        status = service.auto_sync_status()
        if not status.running:
            await update.message.reply_text(
                f"Auto-sync is disabled. Use /autosync on to sync every {minutes} minutes."
            )
            return
        every = (status.interval_ms or 0) // 60000
        lines = [
            "Auto-sync is enabled.",
            f"Interval: every {every} minutes",
            f"Chat: {status.destination.channel_ref}",
        ]
        if status.last_result is not None:
            lines.append(f"Last run: {status.last_result.message}")
        await update.message.reply_text("\n".join(lines))
    else:
        await update.message.reply_text("Usage: /autosync on|off|status")


@authorized_only
async def cmd_calendars(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /calendars — list configured calendar sources."""
    sources = _service(context).list_sources()
    if not sources:
        await update.message.reply_text("No calendars configured. Set CALENDAR_SOURCES in .env.")
        return
    lines = ["Configured calendars:"]
    for s in sources:
        lines.append(f"• {s.name} ({s.kind.value}): {s.locator}")
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_service(app: Application) -> EventService:
    """Wire the default store, calendars, notifier and scheduler."""
    from eventsync.adapters.calendar_factory import create_source_adapters
    from eventsync.adapters.telegram_notifier import TelegramNotifier
    from eventsync.core.aggregator import CalendarAggregator
    from eventsync.core.event_service import EventService
    from eventsync.core.signup import SignupManager
    from eventsync.core.sync_scheduler import SyncScheduler
    from eventsync.data.db import EventDB, PresetDB
    from eventsync.data.models import parse_calendar_sources

    tz = ZoneInfo(settings.TIMEZONE)
    store = EventDB()
    notifier = TelegramNotifier(app.bot, tz=tz)
    aggregator = CalendarAggregator(
        parse_calendar_sources(settings.CALENDAR_SOURCES),
        create_source_adapters(),
        timeout_seconds=settings.SOURCE_TIMEOUT_SECONDS,
        default_tz=tz,
    )
    scheduler = SyncScheduler(
        aggregator,
        store,
        notifier,
        job_queue=app.job_queue,
        window_seconds=settings.SYNC_WINDOW_SECONDS,
    )
    return EventService(
        store,
        SignupManager(store),
        scheduler,
        aggregator,
        notifier,
        presets=PresetDB(),
        default_interval_ms=settings.SYNC_INTERVAL_MS,
    )


async def _post_init(app: Application) -> None:
    """Start auto-sync at boot when AUTO_SYNC_CHANNEL is configured."""
    if not settings.AUTO_SYNC_CHANNEL:
        return
    service: EventService = app.bot_data["service"]
    channel = settings.AUTO_SYNC_CHANNEL
    await service.start_auto_sync(
        SyncDestination(channel_ref=channel, space_ref=_space_ref(channel)),
        settings.SYNC_INTERVAL_MS,
    )


def build_app(service: EventService | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        service: EventService to dispatch to. Defaults to one wired from
                 settings (SQLite store, configured calendars, this bot as
                 the notifier).
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_init(_post_init).build()

    if service is None:
        service = build_service(app)
    app.bot_data["service"] = service

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("events", cmd_events))
    app.add_handler(CommandHandler("event", cmd_event))
    app.add_handler(CommandHandler("create", cmd_create))
    app.add_handler(CommandHandler("preset", cmd_preset))
    app.add_handler(CommandHandler("deletepreset", cmd_deletepreset))
    app.add_handler(CommandHandler("delete", cmd_delete))
    app.add_handler(CommandHandler("addrole", cmd_addrole))
    app.add_handler(CommandHandler("signup", cmd_signup))
    app.add_handler(CommandHandler("leave", cmd_leave))
    app.add_handler(CommandHandler("sync", cmd_sync))
    app.add_handler(CommandHandler("autosync", cmd_autosync))
    app.add_handler(CommandHandler("calendars", cmd_calendars))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting EventSync bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
