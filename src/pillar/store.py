"""Directory store: maps entities to files under a workspace.

Layout:

    <workspace_root>/.pillar/config.toml
    <base_dir>/<ProjectId>/README.md
    <base_dir>/<ProjectId>/milestones/<slug>.md
    <base_dir>/<ProjectId>/issues/<NNN>-<slug>.md

Workspace discovery happens once per invocation and produces an explicit
Workspace value; nothing here is process-global. Writes go to a temporary file
in the target directory and are renamed into place, so readers never see a
half-written file. There is no locking: concurrent writers to the same file
end up with whichever rename completed last.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from pillar.codec import (
    decode_issue,
    decode_milestone,
    decode_project,
    encode_issue,
    encode_milestone,
    encode_project,
)
from pillar.config import MARKER_DIR, Config, load_config
from pillar.errors import (
    AlreadyExists,
    NotFound,
    PillarError,
    StoreIOError,
    ValidationError,
)
from pillar.ids import issue_filename, parse_issue_number, slugify
from pillar.models import Entity, Issue, Milestone, Project

logger = logging.getLogger(__name__)

ENV_WORKSPACE = "PILLAR_WORKSPACE"
PROJECT_FILE = "README.md"
MILESTONES_DIR = "milestones"
ISSUES_DIR = "issues"
ENTITY_SUFFIX = ".md"

T = TypeVar("T")


# =============================================================================
# Workspace discovery
# =============================================================================


def resolve_workspace_root(start_dir: Path) -> Path:
    """Walk upward from start_dir until a directory containing .pillar/ is found.

    If PILLAR_WORKSPACE is set, it is used as the starting point instead.
    """
    if env_root := os.environ.get(ENV_WORKSPACE):
        start_dir = Path(env_root)

    current = Path(start_dir).resolve()
    while True:
        if (current / MARKER_DIR).is_dir():
            return current
        if current == current.parent:
            break
        current = current.parent
    raise NotFound(
        f"Not in a pillar workspace: {start_dir}. Run 'pillar init' to initialize one."
    )


def base_directory_path(workspace_root: Path, base_directory: str) -> Path:
    """Resolve a configured base directory without touching the filesystem."""
    root = workspace_root.resolve()
    base_dir = (root / base_directory).resolve()
    marker = root / MARKER_DIR
    if base_dir != root and root not in base_dir.parents:
        raise ValidationError(f"Base directory must be inside the workspace: {base_directory}")
    if base_dir == marker or marker in base_dir.parents:
        raise ValidationError(f"Base directory cannot be '{MARKER_DIR}' or inside it")
    return base_dir


def resolve_base_directory(workspace_root: Path, config: Optional[Config] = None) -> Path:
    """Return the directory that holds project directories, creating it if needed."""
    if config is None:
        config = load_config(workspace_root)

    base_dir = base_directory_path(workspace_root, config.base_directory)
    try:
        base_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StoreIOError(f"Failed to create base directory: {e}", base_dir) from e
    return base_dir


@dataclass(frozen=True)
class Workspace:
    """A resolved workspace: root, parsed config and base directory."""

    root: Path
    config: Config
    base_dir: Path

    @property
    def store(self) -> "Store":
        return Store(self.base_dir)


def open_workspace(start_dir: Optional[Path] = None) -> Workspace:
    """Discover the workspace containing start_dir (default: cwd)."""
    root = resolve_workspace_root(start_dir or Path.cwd())
    config = load_config(root)
    return Workspace(root=root, config=config, base_dir=resolve_base_directory(root, config))


# =============================================================================
# File helpers
# =============================================================================


def atomic_write(path: Path, text: str) -> None:
    """Write text to path via a temporary file and rename."""
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as e:
        raise StoreIOError(f"Failed to write file: {e}", path) from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise StoreIOError(f"Failed to write file: {e}", path) from e


def ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StoreIOError(f"Failed to create directory: {e}", path) from e


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFound(f"File does not exist: {path.name}", path) from None
    except (OSError, UnicodeDecodeError) as e:
        raise StoreIOError(f"Failed to read file: {e}", path) from e


def _entity_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    try:
        return sorted(
            p
            for p in directory.iterdir()
            if p.is_file() and p.suffix == ENTITY_SUFFIX and not p.name.startswith(".")
        )
    except OSError as e:
        raise StoreIOError(f"Failed to list directory: {e}", directory) from e


# =============================================================================
# Load results
# =============================================================================


@dataclass
class LoadError:
    """A file that could not be read or decoded."""

    path: Path
    error: PillarError

    def __str__(self) -> str:
        return f"{self.path}: {self.error.message}"


@dataclass
class LoadResult:
    """Everything found under a base directory."""

    projects: List[Project] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    errors: List[LoadError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Store
# =============================================================================


class Store:
    """Read and write entities under a base directory."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    # -- paths ---------------------------------------------------------------

    def project_dir(self, project_id: str) -> Path:
        return self.base_dir / project_id

    def project_file(self, project_id: str) -> Path:
        return self.project_dir(project_id) / PROJECT_FILE

    def milestones_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / MILESTONES_DIR

    def issues_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / ISSUES_DIR

    def milestone_file(self, project_id: str, title: str) -> Path:
        return self.milestones_dir(project_id) / f"{slugify(title)}{ENTITY_SUFFIX}"

    def find_issue_file(self, project_id: str, number: int) -> Optional[Path]:
        for path in _entity_files(self.issues_dir(project_id)):
            if parse_issue_number(path.name) == number:
                return path
        return None

    def path_for(self, entity: Entity) -> Path:
        """Return where an entity lives (or would be created)."""
        if entity.path is not None:
            return entity.path
        if isinstance(entity, Project):
            return self.project_file(entity.id)
        if isinstance(entity, Milestone):
            return self.milestone_file(entity.project, entity.title)
        existing = self.find_issue_file(entity.project, entity.number)
        if existing is not None:
            return existing
        return self.issues_dir(entity.project) / issue_filename(entity.number, entity.title)

    def directory_names(self) -> List[str]:
        """Names of all visible directories in the base directory."""
        if not self.base_dir.is_dir():
            return []
        try:
            return sorted(
                p.name
                for p in self.base_dir.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )
        except OSError as e:
            raise StoreIOError(f"Failed to list directory: {e}", self.base_dir) from e

    def project_ids(self) -> List[str]:
        return [name for name in self.directory_names() if self.project_file(name).is_file()]

    # -- reading -------------------------------------------------------------

    def _read(self, path: Path, decoder: Callable[[str], T]) -> T:
        text = read_text(path)
        try:
            entity = decoder(text)
        except PillarError as e:
            if e.path is None:
                e.path = path
            raise
        entity.path = path
        return entity

    def read_project(self, project_id: str) -> Project:
        return self._read(self.project_file(project_id), lambda t: decode_project(t, project_id))

    def read_milestone(self, path: Path, project_id: str) -> Milestone:
        return self._read(path, lambda t: decode_milestone(t, project_id))

    def read_issue(self, path: Path, project_id: str) -> Issue:
        number = parse_issue_number(path.name)
        return self._read(path, lambda t: decode_issue(t, project_id, number))

    def load_project(self, project_id: str) -> Project:
        if not self.project_file(project_id).is_file():
            raise NotFound(f"Project '{project_id}' does not exist")
        return self.read_project(project_id)

    def load_milestones(self, project_id: str) -> Tuple[List[Milestone], List[LoadError]]:
        return self._load_many(
            _entity_files(self.milestones_dir(project_id)),
            lambda p: self.read_milestone(p, project_id),
        )

    def load_issues(self, project_id: str) -> Tuple[List[Issue], List[LoadError]]:
        issues, errors = self._load_many(
            _entity_files(self.issues_dir(project_id)),
            lambda p: self.read_issue(p, project_id),
        )
        issues.sort(key=lambda i: i.number)
        return issues, errors

    def load_milestone(self, project_id: str, title: str) -> Milestone:
        """Find a milestone by exact title, falling back to its slug filename."""
        self.load_project(project_id)
        milestones, _ = self.load_milestones(project_id)
        for milestone in milestones:
            if milestone.title == title:
                return milestone
        path = self.milestone_file(project_id, title)
        if path.is_file():
            return self.read_milestone(path, project_id)
        raise NotFound(f"Milestone '{title}' not found in project '{project_id}'")

    def load_issue(self, project_id: str, number: int) -> Issue:
        self.load_project(project_id)
        path = self.find_issue_file(project_id, number)
        if path is None:
            raise NotFound(f"Issue '{project_id}/{number:03d}' not found")
        return self.read_issue(path, project_id)

    def _load_many(
        self, paths: List[Path], reader: Callable[[Path], T]
    ) -> Tuple[List[T], List[LoadError]]:
        items: List[T] = []
        errors: List[LoadError] = []
        for path in paths:
            try:
                items.append(reader(path))
            except PillarError as e:
                logger.warning("Failed to read %s: %s", path, e.message)
                errors.append(LoadError(path=path, error=e))
        return items, errors

    def load_all(self) -> LoadResult:
        """Load every project, milestone and issue under the base directory.

        Files that fail to read or decode are reported in ``errors`` and do not
        stop the load; callers decide whether to continue.
        """
        result = LoadResult()
        for project_id in self.project_ids():
            try:
                result.projects.append(self.read_project(project_id))
            except PillarError as e:
                logger.warning("Failed to read project %s: %s", project_id, e.message)
                result.errors.append(LoadError(path=self.project_file(project_id), error=e))
                continue

            milestones, errors = self.load_milestones(project_id)
            result.milestones.extend(milestones)
            result.errors.extend(errors)

            issues, errors = self.load_issues(project_id)
            result.issues.extend(issues)
            result.errors.extend(errors)
        return result

    # -- writing -------------------------------------------------------------

    def create(self, entity: Entity) -> Path:
        """Write a new entity; AlreadyExists if its file is already there."""
        path = self.path_for(entity)
        if path.exists():
            raise AlreadyExists(f"{entity.kind.value.title()} already exists", path)

        if isinstance(entity, Project):
            ensure_dir(self.milestones_dir(entity.id))
            ensure_dir(self.issues_dir(entity.id))
        else:
            if not self.project_file(entity.project).is_file():
                raise NotFound(f"Project '{entity.project}' does not exist")
            ensure_dir(path.parent)

        atomic_write(path, encode_entity(entity))
        entity.path = path
        logger.debug("Created %s", path)
        return path

    def update(self, entity: Entity) -> Path:
        """Rewrite an existing entity; NotFound if its file is missing."""
        path = self.path_for(entity)
        if not path.is_file():
            raise NotFound(f"{entity.kind.value.title()} does not exist", path)
        atomic_write(path, encode_entity(entity))
        entity.path = path
        logger.debug("Updated %s", path)
        return path


def load_all(base_dir: Path) -> LoadResult:
    return Store(base_dir).load_all()


def encode_entity(entity: Entity) -> str:
    if isinstance(entity, Project):
        return encode_project(entity)
    if isinstance(entity, Milestone):
        return encode_milestone(entity)
    return encode_issue(entity)
