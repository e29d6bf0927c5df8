"""
EventSync — Signup Manager.

Enforces the signup rules on top of EventDB:

- a user holds at most one role per event (signing up elsewhere moves them);
- a role with max_slots never holds more than max_slots users;
- signing up again for the same role is a successful no-op.

Mutations of one event are serialized by a per-event lock and applied inside
a single store transaction. Different events never share a lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from eventsync.data.db import EventDB
    from eventsync.data.models import Event, RoleSpec

logger = logging.getLogger(__name__)


class SignupStatus(str, Enum):
    OK = "ok"
    ALREADY_SIGNED_UP = "already_signed_up"
    EVENT_NOT_FOUND = "event_not_found"
    ROLE_NOT_FOUND = "role_not_found"
    ROLE_FULL = "role_full"
    DUPLICATE_ROLE = "duplicate_role"


@dataclass
class SignupResult:
    status: SignupStatus
    event: Event | None = None
    removed: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (SignupStatus.OK, SignupStatus.ALREADY_SIGNED_UP)


class SignupManager:
    """Role signups with capacity and one-role-per-user rules."""

    def __init__(self, store: EventDB) -> None:
        self._store = store
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, event_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = self._locks[event_id] = threading.Lock()
            return lock

    def forget(self, event_id: str) -> None:
        """Drop the lock of an event that no longer exists."""
        with self._registry_lock:
            self._locks.pop(event_id, None)

    def signup(self, event_id: str, user_id: str, role_name: str) -> SignupResult:
        """Put user_id in role_name, moving them out of any other role."""
        outcome: list[SignupStatus] = []

        def mutate(event: Event) -> bool:
            role = event.get_role(role_name)
            if role is None:
                outcome.append(SignupStatus.ROLE_NOT_FOUND)
                return False

            members = event.signups.setdefault(role_name, [])
            if user_id in members:
                outcome.append(SignupStatus.ALREADY_SIGNED_UP)
                return False

            if role.max_slots is not None and len(members) >= role.max_slots:
                outcome.append(SignupStatus.ROLE_FULL)
                return False

            for users in event.signups.values():
                if user_id in users:
                    users.remove(user_id)
            members.append(user_id)
            outcome.append(SignupStatus.OK)
            return True

        with self._lock_for(event_id):
            event = self._store.modify(event_id, mutate)

        if event is None:
            return SignupResult(SignupStatus.EVENT_NOT_FOUND)

        status = outcome[0]
        if status is SignupStatus.OK:
            logger.info("User %s signed up for %s in event %s", user_id, role_name, event_id)
        elif status is not SignupStatus.ALREADY_SIGNED_UP:
            logger.info(
                "Signup of %s for %s in event %s rejected: %s",
                user_id, role_name, event_id, status.value,
            )
        return SignupResult(status, event)

    def leave(self, event_id: str, user_id: str) -> SignupResult:
        """Remove user_id from whichever role holds them."""
        removed: list[str] = []

        def mutate(event: Event) -> bool:
            for role_name, users in event.signups.items():
                if user_id in users:
                    users.remove(user_id)
                    removed.append(role_name)
            return bool(removed)

        with self._lock_for(event_id):
            event = self._store.modify(event_id, mutate)

        if event is None:
            return SignupResult(SignupStatus.EVENT_NOT_FOUND)
        if removed:
            logger.info("User %s left %s in event %s", user_id, removed[0], event_id)
        return SignupResult(SignupStatus.OK, event, removed=bool(removed))

    def add_role(self, event_id: str, role: RoleSpec) -> SignupResult:
        """Append a role with an empty signup list."""
        duplicate: list[bool] = []

        def mutate(event: Event) -> bool:
            if event.get_role(role.name) is not None:
                duplicate.append(True)
                return False
            event.roles.append(role.to_role())
            event.signups[role.name] = []
            return True

        with self._lock_for(event_id):
            event = self._store.modify(event_id, mutate)

        if event is None:
            return SignupResult(SignupStatus.EVENT_NOT_FOUND)
        if duplicate:
            return SignupResult(SignupStatus.DUPLICATE_ROLE, event)
        logger.info("Role %s added to event %s", role.name, event_id)
        return SignupResult(SignupStatus.OK, event)
