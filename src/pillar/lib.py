"""Core operations for the pillar package.

This module contains the operations that sit between the outer surfaces
(cli.py, api.py) and the entity store (store.py, codec.py, ids.py, query.py).

Architecture:
- cli.py / api.py: argument parsing, output formatting, HTTP transport
- lib.py: create/edit/comment/list/board/search/export/status operations
- store.py, codec.py, ids.py, query.py, templates.py: persistence, identity,
  querying and body templates

Every operation takes an explicit Workspace value; nothing here looks at the
current directory on its own.
"""

import csv
import io
import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pillar.codec import (
    check_comment_content,
    check_description,
    comment_id,
    is_iso_timestamp,
    parse_date,
    parse_tags,
    parse_timestamp,
)
from pillar.config import MARKER_DIR, Config, write_config
from pillar.errors import AlreadyExists, ValidationError
from pillar.ids import allocate_project_id, next_issue_number
from pillar.models import (
    UNKNOWN_AUTHOR,
    Comment,
    Entity,
    EntityKind,
    Issue,
    Milestone,
    Priority,
    Project,
    Status,
    entity_key,
    entity_to_dict,
    has_comments,
    now_utc,
)
from pillar.query import (
    DEFAULT_SORT,
    Criteria,
    Group,
    filter_entities,
    group_entities,
    search_entities,
    sort_entities,
)
from pillar.store import (
    LoadResult,
    Workspace,
    base_directory_path,
    open_workspace,
    resolve_base_directory,
)
from pillar.templates import render_template, write_templates

logger = logging.getLogger(__name__)

EDITABLE_FIELDS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.PROJECT: ("name", "status", "priority", "description"),
    EntityKind.MILESTONE: ("title", "status", "target_date", "description"),
    EntityKind.ISSUE: ("title", "status", "priority", "milestone", "tags", "description"),
}

EXPORT_FORMATS = ("json", "csv")
KIND_CHOICES = ("project", "milestone", "issue", "all")

UPCOMING_MILESTONES_LIMIT = 5

BOARD_STATUSES = (Status.BACKLOG, Status.TODO, Status.IN_PROGRESS, Status.COMPLETED)


# =============================================================================
# Workspace
# =============================================================================


def init_workspace(path: Path, base_directory: str = ".") -> Workspace:
    """Initialize a new workspace rooted at path.

    Raises:
        AlreadyExists: path already contains a .pillar directory
        ValidationError: base_directory escapes the workspace or points into .pillar
    """
    root = Path(path).resolve()
    if (root / MARKER_DIR).exists():
        raise AlreadyExists("Pillar workspace already initialized in this directory", root)

    # Validate before writing anything
    base_directory_path(root, base_directory)

    config = Config(base_directory=base_directory)
    write_config(root, config)
    write_templates(root)
    base_dir = resolve_base_directory(root, config)
    logger.info("Initialized workspace in %s", root)
    return Workspace(root=root, config=config, base_dir=base_dir)


# =============================================================================
# Helpers
# =============================================================================


def _require_text(value: Any, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name.capitalize()} cannot be empty")
    return str(value).strip()


def _initial_description(
    ws: Workspace, kind: EntityKind, description: Optional[str], **values: str
) -> str:
    """The given description, or the kind's template body when none was given."""
    if description is None:
        description = render_template(ws.root, kind, values)
    return check_description(description.strip())


def _unique_tags(tags: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for tag in tags:
        if tag not in seen:
            seen.append(tag)
    return seen


def parse_issue_ref(ref: str) -> Tuple[str, int]:
    """Parse an issue reference like 'ALPH/001' into (project, number)."""
    project, sep, number = ref.partition("/")
    if not sep or not project or not number:
        raise ValidationError(f"Issue ID must be in format 'PROJECT/001': {ref}")
    return project, parse_issue_number_arg(number)


def parse_issue_number_arg(value: Union[str, int]) -> int:
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid issue number: {value}") from None
    if number < 1:
        raise ValidationError(f"Invalid issue number: {value}")
    return number


# =============================================================================
# Create
# =============================================================================


def create_project(
    ws: Workspace,
    name: str,
    project_id: Optional[str] = None,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    description: Optional[str] = None,
) -> Project:
    """Create a project, deriving its id from the name unless one is given.

    Without a description, the body of the project template is used.
    """
    name = _require_text(name, "name")
    description = _initial_description(ws, EntityKind.PROJECT, description, PROJECT_NAME=name)
    store = ws.store
    allocated = allocate_project_id(name, store.directory_names(), project_id)

    now = now_utc()
    project = Project(
        id=allocated,
        name=name,
        status=Status.parse(status) if status else ws.config.default_status,
        priority=Priority.parse(priority) if priority else ws.config.default_priority,
        description=description,
        created=now,
        updated=now,
    )
    store.create(project)
    logger.info("Created project %s (%s)", project.id, project.name)
    return project


def create_milestone(
    ws: Workspace,
    project: str,
    title: str,
    target_date: Union[None, str, date] = None,
    status: Optional[str] = None,
    description: Optional[str] = None,
) -> Milestone:
    title = _require_text(title, "title")
    store = ws.store
    owner = store.load_project(project)

    existing, _ = store.load_milestones(owner.id)
    if any(m.title == title for m in existing):
        raise AlreadyExists(f"Milestone '{title}' already exists in project '{owner.id}'")

    parsed_date = parse_date(target_date, "target_date")
    description = _initial_description(
        ws,
        EntityKind.MILESTONE,
        description,
        MILESTONE_TITLE=title,
        TARGET_DATE=parsed_date.isoformat() if parsed_date else "",
        PROJECT_NAME=owner.name,
    )

    now = now_utc()
    milestone = Milestone(
        project=owner.id,
        title=title,
        status=Status.parse(status) if status else ws.config.default_status,
        target_date=parsed_date,
        description=description,
        created=now,
        updated=now,
    )
    store.create(milestone)
    logger.info("Created milestone %s", entity_key(milestone))
    return milestone


def create_issue(
    ws: Workspace,
    project: str,
    title: str,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    milestone: Optional[str] = None,
    tags: Union[None, str, Sequence[str]] = None,
    description: Optional[str] = None,
) -> Issue:
    """Create an issue with the next free number in its project.

    The milestone is stored as given. A title that names no existing milestone
    is logged and kept, since milestone references may dangle.
    """
    title = _require_text(title, "title")
    store = ws.store
    owner = store.load_project(project)

    milestone = milestone or None
    if milestone is not None:
        milestones, _ = store.load_milestones(owner.id)
        if not any(m.title == milestone for m in milestones):
            logger.warning("Milestone '%s' not found in project %s", milestone, owner.id)

    description = _initial_description(
        ws, EntityKind.ISSUE, description, ISSUE_TITLE=title, PROJECT_NAME=owner.name
    )

    now = now_utc()
    issue = Issue(
        project=owner.id,
        number=next_issue_number(store.issues_dir(owner.id)),
        title=title,
        status=Status.parse(status) if status else Status.TODO,
        priority=Priority.parse(priority) if priority else ws.config.default_priority,
        milestone=milestone,
        tags=_unique_tags(parse_tags(tags)),
        description=description,
        created=now,
        updated=now,
    )
    store.create(issue)
    logger.info("Created issue %s - %s", entity_key(issue), issue.title)
    return issue


# =============================================================================
# Edit
# =============================================================================


def _apply_changes(entity: Entity, changes: Mapping[str, Any]) -> Entity:
    if not changes:
        raise ValidationError("No changes specified")

    allowed = EDITABLE_FIELDS[entity.kind]
    unknown = sorted(k for k in changes if k not in allowed)
    if unknown:
        raise ValidationError(
            f"Unknown {entity.kind.value} field(s): {', '.join(unknown)}. "
            f"Editable: {', '.join(allowed)}"
        )

    for key, value in changes.items():
        if key in ("name", "title"):
            setattr(entity, key, _require_text(value, key))
        elif key == "status":
            entity.status = Status.parse(_require_text(value, key))
        elif key == "priority":
            entity.priority = Priority.parse(_require_text(value, key))
        elif key == "target_date":
            entity.target_date = parse_date(value, key)
        elif key == "milestone":
            entity.milestone = str(value) if value else None
        elif key == "tags":
            entity.tags = _unique_tags(parse_tags(value))
        elif key == "description":
            entity.description = check_description((value or "").strip())

    entity.updated = now_utc()
    return entity


def edit_project(ws: Workspace, project_id: str, changes: Mapping[str, Any]) -> Project:
    """Merge changes into a project and rewrite its file."""
    store = ws.store
    project = _apply_changes(store.load_project(project_id), changes)
    store.update(project)
    logger.info("Updated project %s", project.id)
    return project


def edit_milestone(
    ws: Workspace, project: str, title: str, changes: Mapping[str, Any]
) -> Milestone:
    """Merge changes into a milestone. A new title keeps the existing file."""
    store = ws.store
    milestone = _apply_changes(store.load_milestone(project, title), changes)
    if milestone.title != title:
        milestones, _ = store.load_milestones(milestone.project)
        if any(m.title == milestone.title and m.path != milestone.path for m in milestones):
            raise AlreadyExists(
                f"Milestone '{milestone.title}' already exists in project '{milestone.project}'"
            )
    store.update(milestone)
    logger.info("Updated milestone %s", entity_key(milestone))
    return milestone


def edit_issue(ws: Workspace, project: str, number: int, changes: Mapping[str, Any]) -> Issue:
    store = ws.store
    issue = _apply_changes(store.load_issue(project, number), changes)
    store.update(issue)
    logger.info("Updated issue %s", entity_key(issue))
    return issue


# =============================================================================
# Comments
# =============================================================================


@dataclass(frozen=True)
class EntityRef:
    """Reference to one commentable entity.

    identifier is the milestone title or issue number; projects need none.
    """

    kind: EntityKind
    project: str
    identifier: Optional[str] = None

    @classmethod
    def build(
        cls, kind: Union[str, EntityKind], project: str, identifier: Union[None, str, int] = None
    ) -> "EntityRef":
        kind = EntityKind.parse(kind)
        if kind is not EntityKind.PROJECT and identifier in (None, ""):
            label = "Milestone title" if kind is EntityKind.MILESTONE else "Issue number"
            raise ValidationError(f"{label} required")
        return cls(kind, project, None if identifier is None else str(identifier))

    def __str__(self) -> str:
        if self.kind is EntityKind.PROJECT:
            return self.project
        return f"{self.project}/{self.identifier}"


def load_entity(ws: Workspace, ref: EntityRef) -> Entity:
    store = ws.store
    if ref.kind is EntityKind.PROJECT:
        return store.load_project(ref.project)
    if ref.kind is EntityKind.MILESTONE:
        return store.load_milestone(ref.project, ref.identifier or "")
    return store.load_issue(ref.project, parse_issue_number_arg(ref.identifier or ""))


def get_author() -> str:
    """Comment author: git user.name, then $USER, then 'Unknown'."""
    try:
        result = subprocess.run(
            ["git", "config", "user.name"], capture_output=True, text=True, timeout=5
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git config user.name failed: %s", e)

    return os.environ.get("USER") or UNKNOWN_AUTHOR


def _timestamp_key(timestamp: str) -> datetime:
    parsed = parse_timestamp(timestamp, "timestamp")
    if parsed is None:
        raise ValidationError("Comment timestamp cannot be empty")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_comment(
    entity: Entity, content: str, author: Optional[str], timestamp: Union[None, str, datetime]
) -> Comment:
    content = check_comment_content(_require_text(content, "comment"))
    author = (author or "").strip() or get_author()
    if timestamp is None:
        timestamp = now_utc()
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    if not is_iso_timestamp(timestamp):
        raise ValidationError(f"Comment timestamp must be ISO-8601: {timestamp}")
    # id is assigned once the comment's position is known
    return Comment(
        id="",
        author=author,
        timestamp=timestamp,
        content=content,
    )


def add_comments(
    ws: Workspace, ref: EntityRef, comments: Iterable[Mapping[str, Any]]
) -> List[Comment]:
    """Append several comments to one entity in a single write.

    Each item is a mapping with ``content`` and optional ``author`` and
    ``timestamp``. The batch is appended in timestamp order; items with equal
    timestamps keep the order they were given in.
    """
    entity = load_entity(ws, ref)
    if not has_comments(entity):
        raise ValidationError(f"{entity.kind.value.title()}s do not take comments")

    pending = []
    for item in comments:
        comment = _new_comment(
            entity, item.get("content", ""), item.get("author"), item.get("timestamp")
        )
        pending.append(comment)
    if not pending:
        raise ValidationError("No comments specified")

    added = []
    for comment in sorted(pending, key=lambda c: _timestamp_key(c.timestamp)):
        comment.id = comment_id(len(entity.comments), comment.timestamp, comment.author)
        entity.comments.append(comment)
        added.append(comment)

    ws.store.update(entity)
    logger.info("Added %d comment(s) to %s %s", len(added), ref.kind.value, ref)
    return added


def add_comment(
    ws: Workspace,
    ref: EntityRef,
    content: str,
    author: Optional[str] = None,
    timestamp: Union[None, str, datetime] = None,
) -> Comment:
    """Append one comment to a project, milestone or issue."""
    (comment,) = add_comments(
        ws, ref, [{"content": content, "author": author, "timestamp": timestamp}]
    )
    return comment


def list_comments(ws: Workspace, ref: EntityRef) -> List[Comment]:
    """Comments of one entity, in the order they were appended."""
    return list(load_entity(ws, ref).comments)


# =============================================================================
# Read / query
# =============================================================================


def load_workspace(ws: Workspace) -> LoadResult:
    result = ws.store.load_all()
    if result.errors:
        logger.warning("%d file(s) could not be loaded", len(result.errors))
    return result


def get_all(ws: Workspace) -> Dict[str, List[Dict[str, Any]]]:
    """All entities as JSON-ready dicts, keyed by plural kind."""
    result = load_workspace(ws)
    return {
        "projects": [entity_to_dict(p) for p in result.projects],
        "milestones": [entity_to_dict(m) for m in result.milestones],
        "issues": [entity_to_dict(i) for i in result.issues],
    }


def _entities_of_kind(result: LoadResult, kind: EntityKind) -> List[Entity]:
    if kind is EntityKind.PROJECT:
        return list(result.projects)
    if kind is EntityKind.MILESTONE:
        return list(result.milestones)
    return list(result.issues)


def list_entities(
    ws: Workspace,
    kind: Union[str, EntityKind],
    criteria: Optional[Criteria] = None,
    sort: Optional[str] = None,
) -> List[Entity]:
    """Load, filter and sort one kind of entity. The sort defaults to number."""
    kind = EntityKind.parse(kind)
    items = filter_entities(_entities_of_kind(load_workspace(ws), kind), criteria)
    return sort_entities(items, sort or DEFAULT_SORT)


def board(ws: Workspace, project: Optional[str] = None) -> List[Group]:
    """Issues in one column per workflow status, optionally for one project.

    Every column is returned, empty or not, from backlog to completed.
    Cancelled issues are left off the board. Within a column issues are
    ordered by priority, highest first.

    Raises:
        NotFound: project names no existing project
    """
    criteria = None
    if project:
        criteria = Criteria.build(project=ws.store.load_project(project).id)
    issues = [
        i
        for i in list_entities(ws, EntityKind.ISSUE, criteria, "priority")
        if i.status in BOARD_STATUSES
    ]
    columns = {g.label: g for g in group_entities(issues, "status")}
    return [columns.get(s.value, Group(label=s.value, items=[])) for s in BOARD_STATUSES]


def _kinds(kind: Union[str, EntityKind]) -> List[EntityKind]:
    if kind == "all":
        return list(EntityKind)
    return [EntityKind.parse(kind)]


def search(
    ws: Workspace, query: str, kind: Union[str, EntityKind] = "all"
) -> Dict[str, List[Entity]]:
    """Search titles, descriptions and tags; results keyed by plural kind."""
    if not query or not query.strip():
        raise ValidationError("Search query cannot be empty")
    result = load_workspace(ws)
    return {
        f"{k.value}s": search_entities(_entities_of_kind(result, k), query.strip())
        for k in _kinds(kind)
    }


# =============================================================================
# Export
# =============================================================================

CSV_COLUMNS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.PROJECT: ("id", "name", "status", "priority", "created", "updated"),
    EntityKind.MILESTONE: ("title", "status", "project", "target_date", "created", "updated"),
    EntityKind.ISSUE: (
        "project",
        "number",
        "title",
        "status",
        "priority",
        "milestone",
        "tags",
        "created",
        "updated",
    ),
}


def _csv_row(entity: Entity, columns: Sequence[str]) -> List[str]:
    data = entity_to_dict(entity)
    row = []
    for column in columns:
        value = data.get(column)
        if column == "tags":
            value = ";".join(value or [])
        row.append("" if value is None else str(value))
    return row


def export(ws: Workspace, fmt: str = "json", kind: Union[str, EntityKind] = "all") -> str:
    """Render entities as JSON or CSV text.

    CSV has one table per kind, so it requires a single kind.
    """
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"Unsupported format: {fmt}. Use 'json' or 'csv'")

    result = load_workspace(ws)

    if fmt == "json":
        if kind == "all":
            data: Any = {
                f"{k.value}s": [entity_to_dict(e) for e in _entities_of_kind(result, k)]
                for k in EntityKind
            }
        else:
            data = [entity_to_dict(e) for e in _entities_of_kind(result, EntityKind.parse(kind))]
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    if kind == "all":
        raise ValidationError(
            "CSV export does not support 'all'. Specify: project, milestone, or issue"
        )
    entity_kind = EntityKind.parse(kind)
    columns = CSV_COLUMNS[entity_kind]
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for entity in _entities_of_kind(result, entity_kind):
        writer.writerow(_csv_row(entity, columns))
    return buffer.getvalue()


# =============================================================================
# Status
# =============================================================================


@dataclass
class WorkspaceStatus:
    """Summary of a workspace for the status command."""

    active_projects: List[Tuple[Project, int]] = field(default_factory=list)
    in_progress_issues: List[Issue] = field(default_factory=list)
    upcoming_milestones: List[Milestone] = field(default_factory=list)
    project_count: int = 0
    issue_count: int = 0
    completed_count: int = 0
    todo_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_projects": [
                {"id": p.id, "name": p.name, "in_progress": n} for p, n in self.active_projects
            ],
            "in_progress_issues": [entity_to_dict(i) for i in self.in_progress_issues],
            "upcoming_milestones": [entity_to_dict(m) for m in self.upcoming_milestones],
            "summary": {
                "projects": self.project_count,
                "issues": self.issue_count,
                "completed": self.completed_count,
                "todo": self.todo_count,
            },
        }


def workspace_status(ws: Workspace) -> WorkspaceStatus:
    """Active projects, in-progress issues, upcoming milestones and counts."""
    result = load_workspace(ws)
    issues = result.issues

    in_progress = [i for i in issues if i.status is Status.IN_PROGRESS]
    active = [
        (p, sum(1 for i in in_progress if i.project == p.id))
        for p in result.projects
        if p.status is Status.IN_PROGRESS
    ]
    upcoming = sort_entities(
        [
            m
            for m in result.milestones
            if m.status not in (Status.COMPLETED, Status.CANCELLED) and m.target_date
        ],
        "target_date",
    )

    return WorkspaceStatus(
        active_projects=active,
        in_progress_issues=in_progress,
        upcoming_milestones=upcoming[:UPCOMING_MILESTONES_LIMIT],
        project_count=len(result.projects),
        issue_count=len(issues),
        completed_count=sum(1 for i in issues if i.status is Status.COMPLETED),
        todo_count=sum(1 for i in issues if i.status is Status.TODO),
    )


__all__ = [
    "EntityRef",
    "WorkspaceStatus",
    "add_comment",
    "add_comments",
    "board",
    "create_issue",
    "create_milestone",
    "create_project",
    "edit_issue",
    "edit_milestone",
    "edit_project",
    "export",
    "get_all",
    "get_author",
    "init_workspace",
    "list_comments",
    "list_entities",
    "open_workspace",
    "parse_issue_ref",
    "search",
    "workspace_status",
]
