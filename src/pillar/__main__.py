"""Main entry point for pillar CLI.

Supports both direct invocation (`python -m pillar`) and package entry point.
"""

from pillar.cli import cli

if __name__ == "__main__":
    cli()
