"""Notification port — abstract interface for announcing events.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from eventsync.data.models import Event


class PostError(Exception):
    """Raised when the notification surface rejects a post."""


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def post_event(self, event: Event) -> str: ...

    async def delete_post(self, event: Event) -> None: ...

    async def update_post(self, event: Event) -> None: ...
