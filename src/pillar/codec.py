"""Frontmatter codec: entity files <-> in-memory entities.

An entity file is a YAML frontmatter header followed by a Markdown body:

    ---
    title: Fix bug
    status: todo
    priority: medium
    project: ALPH
    tags: []
    created: 2025-12-29 10:30:00+00:00
    ---

    Free-form description.

    ## Comments

    ### [2025-12-29T10:30:00+00:00] - Alice
    First comment

The "## Comments" section is reserved and runs to the end of the document.
Each "### [timestamp] - author" marker starts one comment, whose content lasts
until the next marker, so comments may contain headings of any level. Text
between the "## Comments" heading and the first marker is kept as the entity's
``preamble``, and header keys the model does not know are kept in the entity's
``extra`` mapping, so a read-modify-write cycle never drops content.

Two kinds of text cannot be represented and are rejected on write: a
description containing a "## Comments" line, and comment content containing a
line that starts with "### [".

Text produced by ``encode`` round-trips byte for byte through ``decode``.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import yaml
from frontmatter.default_handlers import YAMLHandler

from pillar.errors import ValidationError
from pillar.models import (
    UNKNOWN_AUTHOR,
    Comment,
    Issue,
    Milestone,
    Priority,
    Project,
    Status,
)

logger = logging.getLogger(__name__)

_handler = YAMLHandler()


class _HeaderDumper(yaml.SafeDumper):
    """SafeDumper that writes repeated values in full instead of as &id/*id aliases."""

    def ignore_aliases(self, data):
        return True


COMMENTS_HEADING = "## Comments"

_COMMENTS_HEADING_RE = re.compile(r"^## Comments[ \t]*$", re.MULTILINE)
_MARKER_LINE_RE = re.compile(r"^### \[", re.MULTILINE)
_MARKER_PREFIX = "### ["
_MARKER_RE = re.compile(r"^### \[(?P<timestamp>[^\]]*)\](?P<rest>.*)$")
_ISO_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}(?::?\d{2})?)?)?$"
)

# Namespace for deterministic comment ids
_COMMENT_NAMESPACE = uuid.UUID("6f1c2a52-3f0e-4d2b-9a57-0c1d6a1b7e44")

PROJECT_FIELDS = ("name", "status", "priority", "created", "updated")
MILESTONE_FIELDS = ("title", "status", "target_date", "project", "created", "updated")
ISSUE_FIELDS = (
    "title",
    "status",
    "priority",
    "project",
    "milestone",
    "tags",
    "created",
    "updated",
)


# =============================================================================
# Document level
# =============================================================================


def decode(text: str) -> Tuple[Dict[str, Any], str]:
    """Split a document into its header fields and stripped body.

    A document without a frontmatter block has an empty header. A block that is
    not valid YAML, or whose YAML is not a mapping, raises ValidationError.
    """
    text = text.lstrip("\ufeff")
    if not _handler.detect(text):
        return {}, text.strip()

    try:
        fm, content = _handler.split(text)
    except ValueError:
        raise ValidationError("Could not find end of frontmatter") from None

    try:
        header = _handler.load(fm)
    except yaml.YAMLError as e:
        raise ValidationError(f"Failed to parse frontmatter YAML: {e}") from None

    if header is None:
        header = {}
    if not isinstance(header, dict):
        raise ValidationError(
            f"Frontmatter must be a mapping, got {type(header).__name__}"
        )
    return header, content.strip()


def document_body(text: str) -> str:
    """Return the stripped body of a document without parsing its header."""
    text = text.lstrip("\ufeff")
    if not _handler.detect(text):
        return text.strip()
    try:
        _, content = _handler.split(text)
    except ValueError:
        raise ValidationError("Could not find end of frontmatter") from None
    return content.strip()


def encode(header: Dict[str, Any], body: str) -> str:
    """Serialize header fields and body to the canonical document layout."""
    metadata = _handler.export(header, Dumper=_HeaderDumper, sort_keys=False)
    document = f"---\n{metadata}\n---\n"
    body = body.strip()
    if body:
        document += f"\n{body}\n"
    return document


# =============================================================================
# Body and comments
# =============================================================================


@dataclass
class BodyParts:
    """A body decomposed into description, comments preamble and comments."""

    description: str
    comments: List[Comment] = field(default_factory=list)
    preamble: str = ""
    warnings: List[str] = field(default_factory=list)


def comment_id(index: int, timestamp: str, author: str) -> str:
    """Stable comment id derived from position, timestamp and author."""
    return "c-" + uuid.uuid5(_COMMENT_NAMESPACE, f"{index}|{timestamp}|{author}").hex[:8]


def is_iso_timestamp(value: str) -> bool:
    """Whether value is an ISO-8601 date or date-time that names a real instant."""
    if not _ISO_TIMESTAMP_RE.match(value.strip()):
        return False
    try:
        parse_timestamp(value, "timestamp")
    except ValidationError:
        return False
    return True


def parse_comments(section: str) -> Tuple[List[Comment], List[str]]:
    """Parse comment blocks, starting at the first "### [" marker.

    Malformed markers (unparsable timestamp, missing bracket) are skipped along
    with their content, and a warning is returned for each.
    """
    comments: List[Comment] = []
    warnings: List[str] = []

    current: Optional[Tuple[str, str]] = None
    skipping = False
    lines: List[str] = []

    def flush() -> None:
        if current is not None:
            timestamp, author = current
            comments.append(
                Comment(
                    id=comment_id(len(comments), timestamp, author),
                    author=author,
                    timestamp=timestamp,
                    content="\n".join(lines).strip(),
                )
            )

    for line in section.splitlines():
        if line.startswith(_MARKER_PREFIX):
            flush()
            current = None
            lines = []
            match = _MARKER_RE.match(line.rstrip())
            if match and is_iso_timestamp(match.group("timestamp")):
                rest = match.group("rest")
                author = UNKNOWN_AUTHOR
                if rest.startswith(" - ") and rest[3:].strip():
                    author = rest[3:].strip()
                current = (match.group("timestamp").strip(), author)
                skipping = False
            else:
                warnings.append(f"Skipped malformed comment block: {line.strip()}")
                skipping = True
        elif current is not None and not skipping:
            lines.append(line)
    flush()

    return comments, warnings


def split_body(body: str) -> BodyParts:
    """Separate the description from the Comments section.

    Everything after the "## Comments" heading belongs to the section. Text
    before its first marker is returned as the preamble.
    """
    match = _COMMENTS_HEADING_RE.search(body)
    if match is None:
        return BodyParts(description=body.strip())

    description = body[: match.start()].strip()
    section = body[match.end():]
    first_marker = _MARKER_LINE_RE.search(section)
    if first_marker is None:
        return BodyParts(description=description, preamble=section.strip())

    comments, warnings = parse_comments(section[first_marker.start():])
    for warning in warnings:
        logger.warning(warning)
    return BodyParts(
        description=description,
        comments=comments,
        preamble=section[: first_marker.start()].strip(),
        warnings=warnings,
    )


def join_body(description: str, comments: List[Comment], preamble: str = "") -> str:
    """Inverse of split_body."""
    parts = []
    if description.strip():
        parts.append(description.strip())
    if comments or preamble.strip():
        section = COMMENTS_HEADING + "\n"
        if preamble.strip():
            section += f"\n{preamble.strip()}\n"
        for comment in comments:
            section += f"\n### [{comment.timestamp}] - {comment.author}\n"
            content = comment.content.strip()
            if content:
                section += content + "\n"
        parts.append(section.rstrip())
    return "\n\n".join(parts)


def check_description(text: str) -> str:
    """Raise ValidationError if text would be read back as a Comments section."""
    if _COMMENTS_HEADING_RE.search(text or ""):
        raise ValidationError(
            f"Description cannot contain a '{COMMENTS_HEADING}' line; "
            "that heading starts the comments section"
        )
    return text


def check_comment_content(text: str) -> str:
    """Raise ValidationError if text would be read back as a new comment."""
    if _MARKER_LINE_RE.search(text or ""):
        raise ValidationError(
            f"Comment lines cannot start with '{_MARKER_PREFIX}'; "
            "that prefix starts a new comment"
        )
    return text


# =============================================================================
# Field parsing
# =============================================================================


def parse_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    """Parse a header timestamp (YAML datetime, date or ISO string)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time(), tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Python 3.10 fromisoformat() wants exactly 6 fractional digits and +HH:MM
        text = re.sub(r"\.(\d+)", lambda m: "." + m.group(1).ljust(6, "0")[:6], text)
        if len(text) > 10:
            time_part = re.sub(
                r"([+-]\d{2}):?(\d{2})?$",
                lambda m: f"{m.group(1)}:{m.group(2) or '00'}",
                text[10:],
            )
            text = text[:10] + time_part
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    raise ValidationError(f"Field {field_name} must be an ISO-8601 timestamp: {value!r}")


def parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"Field {field_name} must be a date (YYYY-MM-DD): {value!r}")


def parse_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, list):
        return [str(t) for t in value if t is not None]
    raise ValidationError("Tags must be a list")


def _required_str(header: Dict[str, Any], key: str) -> str:
    value = header.get(key)
    if value is None or str(value).strip() == "":
        raise ValidationError(f"Missing required field: {key}")
    return str(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or str(value) == "":
        return None
    return str(value)


def _extra(header: Dict[str, Any], known: Tuple[str, ...]) -> Dict[str, Any]:
    return {k: v for k, v in header.items() if k not in known}


def _put_timestamps(header: Dict[str, Any], entity) -> None:
    if entity.created is not None:
        header["created"] = entity.created
    if entity.updated is not None:
        header["updated"] = entity.updated


def _with_extra(header: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if key not in header:
            header[key] = value
    return header


# =============================================================================
# Entity level
# =============================================================================


def decode_project(text: str, project_id: str) -> Project:
    """Decode a project README.md; the id comes from the directory name."""
    header, body = decode(text)
    parts = split_body(body)
    return Project(
        id=project_id,
        name=_required_str(header, "name"),
        status=Status.parse(header.get("status") or Status.BACKLOG),
        priority=Priority.parse(header.get("priority") or Priority.MEDIUM),
        description=parts.description,
        created=parse_timestamp(header.get("created"), "created"),
        updated=parse_timestamp(header.get("updated"), "updated"),
        comments=parts.comments,
        extra=_extra(header, PROJECT_FIELDS),
        preamble=parts.preamble,
        warnings=parts.warnings,
    )


def encode_project(project: Project) -> str:
    header: Dict[str, Any] = {
        "name": project.name,
        "status": project.status.value,
        "priority": project.priority.value,
    }
    _put_timestamps(header, project)
    _with_extra(header, project.extra)
    return encode(header, join_body(project.description, project.comments, project.preamble))


def decode_milestone(text: str, project_id: str) -> Milestone:
    header, body = decode(text)
    parts = split_body(body)
    return Milestone(
        project=project_id,
        title=_required_str(header, "title"),
        status=Status.parse(header.get("status") or Status.BACKLOG),
        target_date=parse_date(header.get("target_date"), "target_date"),
        description=parts.description,
        created=parse_timestamp(header.get("created"), "created"),
        updated=parse_timestamp(header.get("updated"), "updated"),
        comments=parts.comments,
        extra=_extra(header, MILESTONE_FIELDS),
        preamble=parts.preamble,
        warnings=parts.warnings,
    )


def encode_milestone(milestone: Milestone) -> str:
    header: Dict[str, Any] = {
        "title": milestone.title,
        "status": milestone.status.value,
        "target_date": milestone.target_date,
        "project": milestone.project,
    }
    _put_timestamps(header, milestone)
    _with_extra(header, milestone.extra)
    return encode(
        header, join_body(milestone.description, milestone.comments, milestone.preamble)
    )


def decode_issue(text: str, project_id: str, number: Optional[int]) -> Issue:
    """Decode an issue file.

    The issue number is not stored in the header; callers pass the number
    parsed from the filename prefix.
    """
    if number is None:
        raise ValidationError("Missing required field: number")
    header, body = decode(text)
    parts = split_body(body)
    return Issue(
        project=project_id,
        number=number,
        title=_required_str(header, "title"),
        status=Status.parse(header.get("status") or Status.TODO),
        priority=Priority.parse(header.get("priority") or Priority.MEDIUM),
        milestone=_optional_str(header.get("milestone")),
        tags=parse_tags(header.get("tags")),
        description=parts.description,
        created=parse_timestamp(header.get("created"), "created"),
        updated=parse_timestamp(header.get("updated"), "updated"),
        comments=parts.comments,
        extra=_extra(header, ISSUE_FIELDS),
        preamble=parts.preamble,
        warnings=parts.warnings,
    )


def encode_issue(issue: Issue) -> str:
    header: Dict[str, Any] = {
        "title": issue.title,
        "status": issue.status.value,
        "priority": issue.priority.value,
        "project": issue.project,
    }
    if issue.milestone:
        header["milestone"] = issue.milestone
    header["tags"] = list(issue.tags)
    _put_timestamps(header, issue)
    _with_extra(header, issue.extra)
    return encode(header, join_body(issue.description, issue.comments, issue.preamble))
