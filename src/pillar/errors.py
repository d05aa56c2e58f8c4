"""Error taxonomy for the entity store.

All errors raised by pillar inherit from PillarError so callers (CLI, API)
can catch a single base class and present the message to the user.
"""

from pathlib import Path
from typing import Optional


class PillarError(Exception):
    """Base class for all store errors."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path is not None:
            return f"{self.message} ({self.path})"
        return self.message


class NotFound(PillarError):
    """Missing workspace, project, milestone, issue or file."""


class ValidationError(PillarError):
    """Malformed header, missing required field or invalid value."""


class AlreadyExists(PillarError):
    """Identifier or path collision on create."""


class Conflict(AlreadyExists):
    """A user-supplied project identifier is already taken."""


class StoreIOError(PillarError):
    """Filesystem failure (permissions, disk full, ...)."""
