"""Body templates for new entities.

``pillar init`` writes one template per entity kind to .pillar/templates/.
When an entity is created without a description, the body of the matching
template becomes its description, with ``{{PLACEHOLDER}}`` values filled in.
The header of a template is never parsed; the entity's own fields are always
written from the model. Editing a template changes what later creates
produce, and a missing template yields an empty description.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping

from pillar.codec import document_body
from pillar.config import MARKER_DIR
from pillar.errors import PillarError
from pillar.models import EntityKind
from pillar.store import atomic_write, ensure_dir, read_text

logger = logging.getLogger(__name__)

TEMPLATES_DIR = "templates"

_PLACEHOLDER_RE = re.compile(r"\{\{([A-Z_]+)\}\}")

PROJECT_TEMPLATE = """\
---
name: "{{PROJECT_NAME}}"
status: backlog
priority: medium
---

# {{PROJECT_NAME}}

Project description goes here.

## Goals

- Goal 1
- Goal 2
"""

MILESTONE_TEMPLATE = """\
---
title: "{{MILESTONE_TITLE}}"
status: backlog
target_date: "{{TARGET_DATE}}"
project: "{{PROJECT_NAME}}"
---

# {{MILESTONE_TITLE}}

Milestone description and objectives.
"""

ISSUE_TEMPLATE = """\
---
title: "{{ISSUE_TITLE}}"
status: todo
priority: medium
project: "{{PROJECT_NAME}}"
tags: []
---

# {{ISSUE_TITLE}}

## Description

Detailed issue description.

## Acceptance Criteria

- [ ] Criterion 1
- [ ] Criterion 2
"""

DEFAULT_TEMPLATES: Dict[EntityKind, str] = {
    EntityKind.PROJECT: PROJECT_TEMPLATE,
    EntityKind.MILESTONE: MILESTONE_TEMPLATE,
    EntityKind.ISSUE: ISSUE_TEMPLATE,
}


def templates_dir(workspace_root: Path) -> Path:
    return Path(workspace_root) / MARKER_DIR / TEMPLATES_DIR


def template_path(workspace_root: Path, kind: EntityKind) -> Path:
    return templates_dir(workspace_root) / f"{kind.value}.md"


def write_templates(workspace_root: Path) -> List[Path]:
    """Write the default templates, leaving existing files alone."""
    ensure_dir(templates_dir(workspace_root))
    written = []
    for kind, text in DEFAULT_TEMPLATES.items():
        path = template_path(workspace_root, kind)
        if path.exists():
            continue
        atomic_write(path, text)
        written.append(path)
    return written


def render_template(workspace_root: Path, kind: EntityKind, values: Mapping[str, str]) -> str:
    """Return the filled-in body of the template for kind, or "" if there is none.

    Unknown placeholders are left as they are.
    """
    path = template_path(workspace_root, kind)
    if not path.is_file():
        logger.debug("No %s template at %s", kind.value, path)
        return ""
    try:
        body = document_body(read_text(path))
    except PillarError as e:
        if e.path is None:
            e.path = path
        raise
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), body)
