"""pillar - File-based project, milestone and issue tracker.

Entities live as Markdown files with YAML frontmatter inside a workspace
directory, so they can be edited by hand and versioned with git.

Installation:
    pip install -e .

Usage:
    pillar init
    pillar project create "Alpha"
    pillar issue create ALPH "Fix bug" --priority high
"""

__version__ = "0.1.0"
