"""Workspace configuration stored in .pillar/config.toml."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

# Python 3.10 compatibility: tomllib added in 3.11
try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from pillar.errors import NotFound, StoreIOError, ValidationError
from pillar.models import Priority, Status

logger = logging.getLogger(__name__)

MARKER_DIR = ".pillar"
CONFIG_FILE = "config.toml"
CONFIG_VERSION = "0.1.0"
DEFAULT_BASE_DIRECTORY = "."

CONFIG_TEMPLATE = """\
[workspace]
version = "{version}"
base_directory = "{base_directory}"

[defaults]
priority = "{priority}"
status = "{status}"
"""


@dataclass(frozen=True)
class Config:
    """Parsed workspace configuration."""

    version: str = CONFIG_VERSION
    base_directory: str = DEFAULT_BASE_DIRECTORY
    default_priority: Priority = Priority.MEDIUM
    default_status: Status = Status.BACKLOG


def config_path(workspace_root: Path) -> Path:
    return workspace_root / MARKER_DIR / CONFIG_FILE


def parse_config(text: str, source: Path | None = None) -> Config:
    """Parse config.toml content.

    Old configs without base_directory or [defaults] fall back to the
    defaults, so they keep working.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"Failed to parse {CONFIG_FILE}: {e}", source) from None

    workspace = data.get("workspace", {})
    defaults = data.get("defaults", {})
    if not isinstance(workspace, dict) or not isinstance(defaults, dict):
        raise ValidationError(f"Invalid {CONFIG_FILE} structure", source)

    base_directory = str(workspace.get("base_directory") or DEFAULT_BASE_DIRECTORY)
    return Config(
        version=str(workspace.get("version", CONFIG_VERSION)),
        base_directory=base_directory,
        default_priority=Priority.parse(defaults.get("priority", Priority.MEDIUM)),
        default_status=Status.parse(defaults.get("status", Status.BACKLOG)),
    )


def load_config(workspace_root: Path) -> Config:
    """Read and parse the workspace configuration.

    A marker directory without a config file gets the default configuration.
    """
    path = config_path(workspace_root)
    if not path.parent.is_dir():
        raise NotFound(f"Not a pillar workspace: {workspace_root}")
    if not path.exists():
        logger.debug("No %s in %s, using defaults", CONFIG_FILE, path.parent)
        return Config()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreIOError(f"Failed to read {CONFIG_FILE}: {e}", path) from e
    return parse_config(text, path)


def render_config(config: Config) -> str:
    return CONFIG_TEMPLATE.format(
        version=config.version,
        base_directory=config.base_directory.replace("\\", "/").replace('"', ""),
        priority=config.default_priority.value,
        status=config.default_status.value,
    )


def write_config(workspace_root: Path, config: Config) -> Path:
    path = config_path(workspace_root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_config(config), encoding="utf-8")
    except OSError as e:
        raise StoreIOError(f"Failed to write {CONFIG_FILE}: {e}", path) from e
    return path
