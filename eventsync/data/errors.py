"""Store-level errors raised to callers of EventDB and PresetDB."""

from __future__ import annotations


class ValidationError(Exception):
    """Raised when input has the wrong shape (bad start time, negative duration...)."""


class NotFound(Exception):
    """Raised when a referenced event or preset does not exist."""
