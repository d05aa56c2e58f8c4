"""Identifier allocation: project ids, filename slugs and issue numbers.

Issue numbers are recomputed from the issues directory on every create
(max existing number + 1) instead of being kept in a counter file, so
externally deleted files never confuse the allocator. Two processes creating
an issue in the same project at the same moment can pick the same number;
that race is accepted.
"""

import logging
import re
from pathlib import Path
from typing import Iterable, Optional

from pillar.errors import Conflict, StoreIOError, ValidationError

logger = logging.getLogger(__name__)

MAX_PROJECT_ID_LENGTH = 20
DERIVED_ID_LENGTH = 4
ISSUE_SLUG_LENGTH = 40

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_WORD_SPLIT_RE = re.compile(r"[\s\-_]+")
_ISSUE_FILE_RE = re.compile(r"^(\d+)(?:-.*)?\.md$")


def validate_project_id(project_id: str) -> str:
    """Check a user-supplied project id and return it unchanged."""
    if not project_id:
        raise ValidationError("Project ID cannot be empty")
    if len(project_id) > MAX_PROJECT_ID_LENGTH:
        raise ValidationError(
            f"Project ID must be {MAX_PROJECT_ID_LENGTH} characters or less: {project_id}"
        )
    if not _PROJECT_ID_RE.match(project_id):
        raise ValidationError(
            "Project ID can only contain alphanumeric characters, hyphens, "
            f"and underscores: {project_id}"
        )
    return project_id


def derive_project_id(name: str) -> str:
    """Derive a short project id from a project name.

    Multi-word names use the initials of the first four words, single words
    use their first four characters.

    Examples:
        >>> derive_project_id("Alpha")
        'ALPH'
        >>> derive_project_id("Pillar Web UI")
        'PWU'
    """
    words = [re.sub(r"[^A-Za-z0-9]", "", w) for w in _WORD_SPLIT_RE.split(name)]
    words = [w for w in words if w]
    if not words:
        raise ValidationError(f"Cannot derive a project ID from name: {name!r}")

    if len(words) > 1:
        derived = "".join(w[0] for w in words[:DERIVED_ID_LENGTH])
    else:
        derived = words[0][:DERIVED_ID_LENGTH]
    return derived.upper()


def allocate_project_id(
    name: str, existing: Iterable[str], requested: Optional[str] = None
) -> str:
    """Pick the id for a new project.

    A requested id is used verbatim and raises Conflict when taken. A derived
    id gets a numeric suffix (ALPH2, ALPH3, ...) until it is free.
    Comparison is case-insensitive so ids stay distinct on any filesystem.
    """
    taken = {e.lower() for e in existing}

    if requested:
        validate_project_id(requested)
        if requested.lower() in taken:
            raise Conflict(f"Project ID '{requested}' is already in use by another project")
        return requested

    base = derive_project_id(name)
    candidate = base
    suffix = 2
    while candidate.lower() in taken:
        candidate = f"{base}{suffix}"
        suffix += 1
    if candidate != base:
        logger.debug("Project ID %s taken, using %s", base, candidate)
    return candidate


def slugify(text: str, max_length: Optional[int] = None) -> str:
    """Convert a title to a filename-safe slug.

    Examples:
        >>> slugify("Fix critical bug")
        'fix-critical-bug'
        >>> slugify("v1.0")
        'v1-0'
    """
    slug = re.sub(r"[^a-z0-9_]+", "-", text.lower()).strip("-")
    if max_length is not None:
        slug = slug[:max_length].rstrip("-")
    return slug or "untitled"


def parse_issue_number(filename: str) -> Optional[int]:
    """Extract the issue number from a filename like 001-fix-bug.md."""
    match = _ISSUE_FILE_RE.match(filename)
    if match is None:
        return None
    return int(match.group(1))


def issue_filename(number: int, title: str) -> str:
    return f"{number:03d}-{slugify(title, ISSUE_SLUG_LENGTH)}.md"


def next_issue_number(issues_dir: Path) -> int:
    """Return one more than the highest issue number found in issues_dir."""
    if not issues_dir.is_dir():
        return 1
    highest = 0
    try:
        for entry in issues_dir.iterdir():
            number = parse_issue_number(entry.name)
            if number is not None and number > highest:
                highest = number
    except OSError as e:
        raise StoreIOError(f"Failed to scan issues directory: {e}", issues_dir) from e
    return highest + 1
