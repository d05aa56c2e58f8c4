"""Query engine: filter, sort and group already-loaded entities.

Every function here is pure. Inputs are never mutated and results are new
lists, so the same loaded collection can be queried from several request
threads at once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pillar.errors import ValidationError
from pillar.models import (
    NO_MILESTONE,
    PRIORITY_WEIGHT,
    STATUS_WEIGHT,
    Entity,
    Issue,
    Milestone,
    Priority,
    Project,
    Status,
    has_priority,
    has_status,
    priority_weight,
    status_weight,
)

SORT_KEYS = ("number", "priority", "status", "title", "name", "created", "target_date")
GROUP_KEYS = ("status", "priority", "project", "milestone")
DEFAULT_SORT = "number"

Values = Union[None, str, Iterable[str]]


# =============================================================================
# Filter
# =============================================================================


def _as_tuple(values: Values) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(v for v in values if v)


@dataclass(frozen=True)
class Criteria:
    """Filter criteria.

    Empty fields match everything. Values within one field are ORed, fields are
    ANDed together.
    """

    projects: Tuple[str, ...] = ()
    milestones: Tuple[str, ...] = ()
    statuses: Tuple[Status, ...] = ()
    priorities: Tuple[Priority, ...] = ()
    tags: Tuple[str, ...] = ()
    search: Optional[str] = None

    @classmethod
    def build(
        cls,
        project: Values = None,
        milestone: Values = None,
        status: Values = None,
        priority: Values = None,
        tag: Values = None,
        search: Optional[str] = None,
    ) -> "Criteria":
        """Build criteria from user input, parsing enum values.

        Raises ValidationError for an unknown status or priority.
        """
        return cls(
            projects=_as_tuple(project),
            milestones=_as_tuple(milestone),
            statuses=tuple(Status.parse(s) for s in _as_tuple(status)),
            priorities=tuple(Priority.parse(p) for p in _as_tuple(priority)),
            tags=_as_tuple(tag),
            search=search or None,
        )

    @property
    def empty(self) -> bool:
        return not (
            self.projects
            or self.milestones
            or self.statuses
            or self.priorities
            or self.tags
            or self.search
        )


def _matches_search(entity: Entity, needle: str) -> bool:
    if needle in entity.title.lower():
        return True
    return isinstance(entity, Project) and needle in entity.id.lower()


def matches(entity: Entity, criteria: Criteria) -> bool:
    """Whether a single entity satisfies all criteria.

    A criterion on a field the entity's kind does not have never matches.
    """
    if criteria.projects:
        wanted = {p.lower() for p in criteria.projects}
        if entity.project.lower() not in wanted:
            return False

    if criteria.milestones:
        if isinstance(entity, Issue):
            if entity.milestone not in criteria.milestones:
                return False
        elif isinstance(entity, Milestone):
            if entity.title not in criteria.milestones:
                return False
        else:
            return False

    if criteria.statuses:
        if not has_status(entity) or entity.status not in criteria.statuses:
            return False

    if criteria.priorities:
        if not has_priority(entity) or entity.priority not in criteria.priorities:
            return False

    if criteria.tags:
        if not isinstance(entity, Issue):
            return False
        wanted_tags = {t.lower() for t in criteria.tags}
        if not any(t.lower() in wanted_tags for t in entity.tags):
            return False

    if criteria.search:
        if not _matches_search(entity, criteria.search.lower()):
            return False

    return True


def filter_entities(items: Iterable[Entity], criteria: Optional[Criteria] = None) -> List[Entity]:
    """Return the entities matching criteria, in input order."""
    if criteria is None or criteria.empty:
        return list(items)
    return [e for e in items if matches(e, criteria)]


# =============================================================================
# Sort
# =============================================================================


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _split_missing(
    items: Sequence[Entity], getter: Callable[[Entity], object]
) -> Tuple[List[Entity], List[Entity]]:
    present = [e for e in items if getter(e) is not None]
    missing = [e for e in items if getter(e) is None]
    return present, missing


def _number(entity: Entity) -> Optional[int]:
    return entity.number if isinstance(entity, Issue) else None


def _target_date(entity: Entity) -> Optional[date]:
    return entity.target_date if isinstance(entity, Milestone) else None


def sort_entities(items: Iterable[Entity], key: str = DEFAULT_SORT) -> List[Entity]:
    """Sort entities by key. The sort is stable: ties keep input order.

    Keys:
        number: issue number, highest first; other kinds follow in input order
        priority / status: weight table, highest first
        title / name: case-insensitive alphabetical
        created: newest first, undated last
        target_date: earliest first, undated last
    """
    items = list(items)
    key = (key or DEFAULT_SORT).lower()

    if key == "number":
        present, missing = _split_missing(items, _number)
        return sorted(present, key=_number, reverse=True) + missing
    if key == "priority":
        return sorted(
            items,
            key=lambda e: priority_weight(e.priority) if has_priority(e) else 0,
            reverse=True,
        )
    if key == "status":
        return sorted(items, key=lambda e: status_weight(e.status), reverse=True)
    if key in ("title", "name"):
        return sorted(items, key=lambda e: e.title.casefold())
    if key == "created":
        present, missing = _split_missing(items, lambda e: e.created)
        return sorted(present, key=lambda e: _aware(e.created), reverse=True) + missing
    if key == "target_date":
        present, missing = _split_missing(items, _target_date)
        return sorted(present, key=_target_date) + missing

    raise ValidationError(
        f"Invalid sort key: {key}. Expected one of: {', '.join(SORT_KEYS)}"
    )


# =============================================================================
# Group
# =============================================================================


@dataclass
class Group:
    """A labelled bucket of entities."""

    label: str
    items: List[Entity]


def _group_label(entity: Entity, by: str) -> str:
    if by == "status":
        return entity.status.value
    if by == "priority":
        if not has_priority(entity):
            raise ValidationError(f"Cannot group {entity.kind.value}s by priority")
        return entity.priority.value
    if by == "project":
        return entity.project
    # milestone
    if isinstance(entity, Issue):
        return entity.milestone or NO_MILESTONE
    if isinstance(entity, Milestone):
        return entity.title
    raise ValidationError(f"Cannot group {entity.kind.value}s by milestone")


def group_entities(items: Iterable[Entity], by: str) -> List[Group]:
    """Partition entities into ordered buckets.

    Items keep their input order inside each bucket, so callers sort first and
    group second. Status buckets follow the workflow, from backlog through
    completed, with cancelled first. Priority buckets are ordered by weight,
    highest first. Project and milestone buckets are alphabetical, and issues
    that have no milestone are collected under "No Milestone".
    """
    by = (by or "").lower()
    if by not in GROUP_KEYS:
        raise ValidationError(
            f"Invalid group key: {by}. Expected one of: {', '.join(GROUP_KEYS)}"
        )

    buckets: Dict[str, List[Entity]] = {}
    for entity in items:
        buckets.setdefault(_group_label(entity, by), []).append(entity)

    if by == "status":
        weights = {s.value: w for s, w in STATUS_WEIGHT.items()}
        labels = sorted(buckets, key=lambda label: weights.get(label, 0))
    elif by == "priority":
        weights = {p.value: w for p, w in PRIORITY_WEIGHT.items()}
        labels = sorted(buckets, key=lambda label: weights.get(label, 0), reverse=True)
    else:
        labels = sorted(buckets)

    return [Group(label=label, items=buckets[label]) for label in labels]


# =============================================================================
# Search
# =============================================================================


def search_entities(items: Iterable[Entity], query: str) -> List[Entity]:
    """Case-insensitive substring search over title, description and tags."""
    needle = query.lower()
    results = []
    for entity in items:
        haystacks = [entity.title, entity.description]
        if isinstance(entity, Issue):
            haystacks.extend(entity.tags)
        if any(needle in h.lower() for h in haystacks):
            results.append(entity)
    return results
