"""Entity model for the file-based tracker.

This module contains:
- Enumerations: Status, Priority, EntityKind
- Constants: STATUS_WEIGHT, PRIORITY_WEIGHT, NO_MILESTONE
- Data classes: Comment, Project, Milestone, Issue
- Capability helpers shared by the query engine and the comment operations
- JSON-ready serialization helpers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Optional,
    Union,
)

from pillar.errors import ValidationError


# =============================================================================
# Enumerations
# =============================================================================


class EntityKind(str, Enum):
    """Closed set of entity kinds stored in a workspace."""

    PROJECT = "project"
    MILESTONE = "milestone"
    ISSUE = "issue"

    @classmethod
    def parse(cls, value: Union[str, "EntityKind"]) -> "EntityKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid entity type: {value}") from None


class Status(str, Enum):
    """Lifecycle status shared by projects, milestones and issues."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Union[str, "Status"]) -> "Status":
        """Parse a status, accepting the aliases people type by hand.

        Examples:
            >>> Status.parse("done")
            <Status.COMPLETED: 'completed'>
            >>> Status.parse("In-Progress")
            <Status.IN_PROGRESS: 'in-progress'>
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Invalid status: {value}") from None

    def __str__(self) -> str:
        return self.value


class Priority(str, Enum):
    """Priority level for projects and issues."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: Union[str, "Priority"]) -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid priority: {value}") from None

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Constants
# =============================================================================

STATUS_ALIASES: dict[str, str] = {
    "inprogress": "in-progress",
    "in_progress": "in-progress",
    "done": "completed",
    "canceled": "cancelled",
}

# Ordering weights used by sort and group. Higher sorts first.
STATUS_WEIGHT: dict[Status, int] = {
    Status.CANCELLED: 0,
    Status.BACKLOG: 1,
    Status.TODO: 2,
    Status.IN_PROGRESS: 3,
    Status.COMPLETED: 4,
}

PRIORITY_WEIGHT: dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}

# Bucket label for issues without a milestone
NO_MILESTONE = "No Milestone"

UNKNOWN_AUTHOR = "Unknown"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Comment:
    """A single comment inside an entity's Comments section."""

    id: str
    author: str
    timestamp: str  # ISO-8601, kept as written
    content: str


@dataclass
class Project:
    """A project, stored as <base>/<id>/README.md.

    Attributes:
        id: Project identifier, also the directory name
        name: Display name
        status: Current status
        priority: Project priority
        description: Markdown body without the Comments section
        created: Creation timestamp
        updated: Last update timestamp
        comments: Comments in insertion order
        extra: Header keys the model does not know, in file order
        preamble: Text between the Comments heading and the first comment
        path: Location of README.md once loaded or written
    """

    id: str
    name: str
    status: Status = Status.BACKLOG
    priority: Priority = Priority.MEDIUM
    description: str = ""
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    comments: List[Comment] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    preamble: str = ""
    path: Optional[Path] = field(default=None, compare=False, repr=False)
    warnings: List[str] = field(default_factory=list, compare=False, repr=False)

    kind: ClassVar[EntityKind] = EntityKind.PROJECT

    @property
    def project(self) -> str:
        """Owning project id (a project owns itself)."""
        return self.id

    @property
    def title(self) -> str:
        return self.name


@dataclass
class Milestone:
    """A milestone, stored as <base>/<project>/milestones/<slug>.md."""

    project: str
    title: str
    status: Status = Status.BACKLOG
    target_date: Optional[date] = None
    description: str = ""
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    comments: List[Comment] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    preamble: str = ""
    path: Optional[Path] = field(default=None, compare=False, repr=False)
    warnings: List[str] = field(default_factory=list, compare=False, repr=False)

    kind: ClassVar[EntityKind] = EntityKind.MILESTONE

    @property
    def name(self) -> str:
        return self.title


@dataclass
class Issue:
    """An issue, stored as <base>/<project>/issues/<NNN>-<slug>.md.

    The number is not part of the header: it is the numeric filename prefix,
    assigned once at creation and never reused while a higher number exists.
    The milestone is a weak reference by title and may dangle.
    """

    project: str
    number: int
    title: str
    status: Status = Status.TODO
    priority: Priority = Priority.MEDIUM
    milestone: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    description: str = ""
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    comments: List[Comment] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    preamble: str = ""
    path: Optional[Path] = field(default=None, compare=False, repr=False)
    warnings: List[str] = field(default_factory=list, compare=False, repr=False)

    kind: ClassVar[EntityKind] = EntityKind.ISSUE

    @property
    def name(self) -> str:
        return self.title

    @property
    def display_number(self) -> str:
        """Zero-padded number as used in filenames (001, 002, ...)."""
        return f"{self.number:03d}"


Entity = Union[Project, Milestone, Issue]


# =============================================================================
# Capabilities
# =============================================================================

_STATUS_KINDS = frozenset({EntityKind.PROJECT, EntityKind.MILESTONE, EntityKind.ISSUE})
_PRIORITY_KINDS = frozenset({EntityKind.PROJECT, EntityKind.ISSUE})
_COMMENT_KINDS = frozenset({EntityKind.PROJECT, EntityKind.MILESTONE, EntityKind.ISSUE})


def has_status(entity: Entity) -> bool:
    return entity.kind in _STATUS_KINDS


def has_priority(entity: Entity) -> bool:
    return entity.kind in _PRIORITY_KINDS


def has_comments(entity: Entity) -> bool:
    return entity.kind in _COMMENT_KINDS


def status_weight(status: Optional[Status]) -> int:
    if status is None:
        return 0
    return STATUS_WEIGHT.get(status, 0)


def priority_weight(priority: Optional[Priority]) -> int:
    if priority is None:
        return 0
    return PRIORITY_WEIGHT.get(priority, 0)


def entity_key(entity: Entity) -> str:
    """Human-readable identifier: ID, ID/<milestone title> or ID/<number>."""
    if isinstance(entity, Project):
        return entity.id
    if isinstance(entity, Milestone):
        return f"{entity.project}/{entity.title}"
    return f"{entity.project}/{entity.display_number}"


def now_utc() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


# =============================================================================
# Serialization
# =============================================================================


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def comment_to_dict(comment: Comment) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "author": comment.author,
        "timestamp": comment.timestamp,
        "content": comment.content,
    }


def entity_to_dict(entity: Entity) -> Dict[str, Any]:
    """Serialize an entity to a JSON-compatible dictionary.

    Returns dict with:
    - id: entity key (ID, ID/<title> or ID/<number>)
    - kind: project, milestone or issue
    - the entity's own fields, with enums as strings and dates as ISO strings
    - comments: list of comment dicts in insertion order
    """
    data: Dict[str, Any] = {"id": entity_key(entity), "kind": entity.kind.value}
    if isinstance(entity, Project):
        data.update(
            {
                "id": entity.id,
                "name": entity.name,
                "status": entity.status.value,
                "priority": entity.priority.value,
            }
        )
    elif isinstance(entity, Milestone):
        data.update(
            {
                "project": entity.project,
                "title": entity.title,
                "status": entity.status.value,
                "target_date": _iso(entity.target_date),
            }
        )
    else:
        data.update(
            {
                "project": entity.project,
                "number": entity.display_number,
                "title": entity.title,
                "status": entity.status.value,
                "priority": entity.priority.value,
                "milestone": entity.milestone,
                "tags": list(entity.tags),
            }
        )
    data["description"] = entity.description
    data["created"] = _iso(entity.created)
    data["updated"] = _iso(entity.updated)
    data["comments"] = [comment_to_dict(c) for c in entity.comments]
    return data
