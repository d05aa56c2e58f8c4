"""Command-line interface for pillar workspaces.

Features:
- Workspace initialization, with entity templates
- Project, milestone and issue create/list/show/edit
- Comments on any entity
- Status board of issues
- Search, export (JSON/CSV) and workspace status
- Serving the HTTP API
"""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from tabulate import tabulate

from pillar import __version__, lib
from pillar.errors import PillarError
from pillar.lib import EntityRef
from pillar.models import (
    Entity,
    EntityKind,
    Issue,
    Milestone,
    Priority,
    Project,
    Status,
    comment_to_dict,
    entity_key,
    entity_to_dict,
)
from pillar.query import GROUP_KEYS, SORT_KEYS, Criteria, group_entities
from pillar.store import ENV_WORKSPACE, Workspace, open_workspace
from pillar.templates import templates_dir

logger = logging.getLogger(__name__)

# Keep console instances for CLI output
console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "backlog": "white",
    "todo": "cyan",
    "in-progress": "yellow",
    "completed": "green",
    "cancelled": "red",
}

PRIORITY_STYLES = {
    "low": "white",
    "medium": "cyan",
    "high": "yellow",
    "urgent": "red",
}

STATUS_CHOICES = [s.value for s in Status] + ["done", "canceled", "inprogress"]
PRIORITY_CHOICES = [p.value for p in Priority]


def styled_status(status: Status) -> str:
    return f"[{STATUS_STYLES.get(status.value, 'white')}]{status.value}[/]"


def styled_priority(priority: Priority) -> str:
    return f"[{PRIORITY_STYLES.get(priority.value, 'white')}]{priority.value}[/]"


def handle_errors(f):
    """Print PillarError messages and exit with status 1."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except PillarError as e:
            err_console.print(f"[red]Error: {escape(str(e))}[/]")
            sys.exit(1)

    return wrapper


def get_workspace(obj: Dict[str, Any]) -> Workspace:
    return open_workspace(obj.get("start_dir"))


def print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def print_changes(changes: Dict[str, Any]) -> None:
    for key, value in changes.items():
        console.print(f"  {key}: {escape(str(value))}")


@click.group()
@click.version_option(__version__, prog_name="pillar")
@click.option("-v", "--verbose", is_flag=True)
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True, path_type=Path),
    envvar=ENV_WORKSPACE,
    help=f"Start workspace discovery here instead of the current directory. Can also be set via {ENV_WORKSPACE}.",
)
@click.pass_context
def cli(ctx, verbose, workspace_dir):
    """File-based project, milestone and issue tracker."""
    log_level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=log_level)
    ctx.ensure_object(dict)
    ctx.obj["start_dir"] = workspace_dir


# =============================================================================
# init
# =============================================================================


@cli.command("init")
@click.option(
    "--path",
    type=click.Path(file_okay=False, resolve_path=True, path_type=Path),
    default=".",
    help="Directory to initialize (default: current directory)",
)
@click.option(
    "--base-dir",
    default=".",
    show_default=True,
    help="Subdirectory, relative to the workspace, that holds the projects",
)
@handle_errors
def init_cmd(path: Path, base_dir: str):
    """Initialize a new pillar workspace."""
    path.mkdir(parents=True, exist_ok=True)
    ws = lib.init_workspace(path, base_dir)
    console.print(f"[green]✓[/] Initialized Pillar workspace in {escape(str(ws.root))}")
    if ws.config.base_directory != ".":
        console.print(f"  Base directory: {escape(ws.config.base_directory)}")
    console.print(f"  Templates: {escape(str(templates_dir(ws.root)))}")


# =============================================================================
# Shared list rendering
# =============================================================================


def list_options(f):
    """Filter, sort and output options shared by the list commands."""
    options = [
        click.option(
            "--status",
            "-s",
            multiple=True,
            type=click.Choice(STATUS_CHOICES, case_sensitive=False),
            help="Filter by status (repeatable)",
        ),
        click.option(
            "--priority",
            multiple=True,
            type=click.Choice(PRIORITY_CHOICES, case_sensitive=False),
            help="Filter by priority (repeatable)",
        ),
        click.option("--search", help="Case-insensitive substring of the title"),
        click.option("--group", type=click.Choice(GROUP_KEYS), help="Group results"),
        click.option("--json", "output_json", is_flag=True, help="Output as JSON"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def render_rows(items: Sequence[Entity]) -> List[List[str]]:
    rows = []
    for e in items:
        if isinstance(e, Project):
            rows.append([e.id, e.name, e.status.value, e.priority.value])
        elif isinstance(e, Milestone):
            rows.append(
                [e.project, e.title, e.status.value, e.target_date.isoformat() if e.target_date else "-"]
            )
        else:
            rows.append(
                [
                    entity_key(e),
                    e.title,
                    e.status.value,
                    e.priority.value,
                    e.milestone or "-",
                    ", ".join(e.tags),
                ]
            )
    return rows


HEADERS = {
    EntityKind.PROJECT: ["ID", "Name", "Status", "Priority"],
    EntityKind.MILESTONE: ["Project", "Title", "Status", "Target"],
    EntityKind.ISSUE: ["ID", "Title", "Status", "Priority", "Milestone", "Tags"],
}


def print_entities(kind: EntityKind, items: List[Entity], group: Optional[str], output_json: bool):
    if output_json:
        if group:
            print_json(
                [
                    {"label": g.label, "items": [entity_to_dict(e) for e in g.items]}
                    for g in group_entities(items, group)
                ]
            )
        else:
            print_json([entity_to_dict(e) for e in items])
        return

    if not items:
        console.print(f"[yellow]No {kind.value}s found[/]")
        return

    groups = group_entities(items, group) if group else None
    if groups is None:
        table = tabulate(render_rows(items), headers=HEADERS[kind], tablefmt="simple")
        console.print("\n" + table, markup=False)
    else:
        for g in groups:
            console.print(f"\n[bold]{escape(g.label)}[/] ({len(g.items)})")
            table = tabulate(render_rows(g.items), headers=HEADERS[kind], tablefmt="simple")
            console.print(table, markup=False)

    console.print(f"\nTotal: {len(items)} {kind.value}(s)")


def print_details(entity: Entity) -> None:
    """Print metadata table, description and comments of one entity."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")

    table.add_row("ID", escape(entity_key(entity)))
    table.add_row("Title", escape(entity.title))
    table.add_row("Status", styled_status(entity.status))
    if isinstance(entity, (Project, Issue)):
        table.add_row("Priority", styled_priority(entity.priority))
    if isinstance(entity, Milestone) and entity.target_date:
        table.add_row("Target", entity.target_date.isoformat())
    if isinstance(entity, Issue):
        if entity.milestone:
            table.add_row("Milestone", escape(entity.milestone))
        if entity.tags:
            table.add_row("Tags", escape(", ".join(entity.tags)))
    if entity.created:
        table.add_row("Created", entity.created.isoformat())
    if entity.updated:
        table.add_row("Updated", entity.updated.isoformat())
    if entity.path:
        table.add_row("File", escape(str(entity.path)))

    console.print(f"\n[bold]{entity.kind.value.title()}:[/]")
    console.print(table)

    if entity.description:
        console.print("\n[bold]Description:[/]")
        console.out(entity.description, highlight=False)

    if entity.comments:
        console.print(f"\n[bold]Comments ({len(entity.comments)}):[/]")
        for comment in entity.comments:
            console.print(
                f"  [dim]{escape('[' + comment.timestamp + ']')}[/] [bold]{escape(comment.author)}[/]"
            )
            console.out("  " + comment.content.replace("\n", "\n  "), highlight=False)


def collect_changes(**fields) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


# =============================================================================
# project
# =============================================================================


@cli.group("project")
def project_group():
    """Manage projects."""


@project_group.command("create")
@click.argument("name")
@click.option("--id", "project_id", help="Project ID (derived from the name if omitted)")
@click.option("--priority", "-p", type=click.Choice(PRIORITY_CHOICES, case_sensitive=False))
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option(
    "--description", "-d", help="Project description (Markdown; default: project template)"
)
@click.pass_obj
@handle_errors
def project_create(obj, name, project_id, priority, status, description):
    """Create a project."""
    project = lib.create_project(
        get_workspace(obj), name, project_id, priority, status, description
    )
    console.print(
        f"[green]✓[/] Created project '{escape(project.name)}' ({escape(project.id)})"
    )


@project_group.command("list")
@list_options
@click.option("--sort", type=click.Choice(SORT_KEYS), default="name", show_default=True)
@click.pass_obj
@handle_errors
def project_list(obj, status, priority, search, group, output_json, sort):
    """List projects."""
    criteria = Criteria.build(status=status, priority=priority, search=search)
    items = lib.list_entities(get_workspace(obj), EntityKind.PROJECT, criteria, sort)
    print_entities(EntityKind.PROJECT, items, group, output_json)


@project_group.command("show")
@click.argument("project_id")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def project_show(obj, project_id, output_json):
    """Show a project."""
    project = get_workspace(obj).store.load_project(project_id)
    if output_json:
        print_json(entity_to_dict(project))
    else:
        print_details(project)


@project_group.command("edit")
@click.argument("project_id")
@click.option("--name")
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option("--priority", "-p", type=click.Choice(PRIORITY_CHOICES, case_sensitive=False))
@click.option("--description", "-d")
@click.pass_obj
@handle_errors
def project_edit(obj, project_id, name, status, priority, description):
    """Edit a project's fields."""
    changes = collect_changes(name=name, status=status, priority=priority, description=description)
    project = lib.edit_project(get_workspace(obj), project_id, changes)
    console.print(f"[green]✓[/] Updated project {escape(project.id)}")
    print_changes(changes)


# =============================================================================
# milestone
# =============================================================================


@cli.group("milestone")
def milestone_group():
    """Manage milestones."""


@milestone_group.command("create")
@click.argument("project")
@click.argument("title")
@click.option("--date", "target_date", help="Target date (YYYY-MM-DD)")
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option("--description", "-d", help="Description (default: milestone template)")
@click.pass_obj
@handle_errors
def milestone_create(obj, project, title, target_date, status, description):
    """Create a milestone in PROJECT."""
    milestone = lib.create_milestone(
        get_workspace(obj), project, title, target_date, status, description
    )
    console.print(
        f"[green]✓[/] Created milestone '{escape(milestone.title)}' in {escape(milestone.project)}"
    )
    if milestone.target_date:
        console.print(f"  Target date: {milestone.target_date.isoformat()}")


@milestone_group.command("list")
@click.option("--project", "-P", multiple=True, help="Filter by project ID (repeatable)")
@list_options
@click.option("--sort", type=click.Choice(SORT_KEYS), default="target_date", show_default=True)
@click.pass_obj
@handle_errors
def milestone_list(obj, project, status, priority, search, group, output_json, sort):
    """List milestones."""
    criteria = Criteria.build(project=project, status=status, priority=priority, search=search)
    items = lib.list_entities(get_workspace(obj), EntityKind.MILESTONE, criteria, sort)
    print_entities(EntityKind.MILESTONE, items, group, output_json)


@milestone_group.command("edit")
@click.argument("project")
@click.argument("title")
@click.option("--title", "new_title", help="New title")
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option("--date", "target_date", help="Target date (YYYY-MM-DD, empty to clear)")
@click.option("--description", "-d")
@click.pass_obj
@handle_errors
def milestone_edit(obj, project, title, new_title, status, target_date, description):
    """Edit milestone TITLE in PROJECT."""
    changes = collect_changes(
        title=new_title, status=status, target_date=target_date, description=description
    )
    milestone = lib.edit_milestone(get_workspace(obj), project, title, changes)
    console.print(
        f"[green]✓[/] Updated milestone '{escape(milestone.title)}' in {escape(milestone.project)}"
    )


# =============================================================================
# issue
# =============================================================================


@cli.group("issue")
def issue_group():
    """Manage issues."""


@issue_group.command("create")
@click.argument("project")
@click.argument("title")
@click.option("--priority", "-p", type=click.Choice(PRIORITY_CHOICES, case_sensitive=False))
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option("--milestone", "-m", help="Milestone title")
@click.option("--tags", "-t", help="Comma-separated tags")
@click.option("--description", "-d", help="Description (default: issue template)")
@click.pass_obj
@handle_errors
def issue_create(obj, project, title, priority, status, milestone, tags, description):
    """Create an issue in PROJECT."""
    issue = lib.create_issue(
        get_workspace(obj), project, title, priority, status, milestone, tags, description
    )
    console.print(
        f"[green]✓[/] Created issue '{escape(entity_key(issue))}' - {escape(issue.title)}"
    )
    if issue.milestone:
        console.print(f"  Milestone: {escape(issue.milestone)}")


@issue_group.command("list")
@click.option("--project", "-P", multiple=True, help="Filter by project ID (repeatable)")
@click.option("--milestone", "-m", multiple=True, help="Filter by milestone title (repeatable)")
@click.option("--tag", "-t", multiple=True, help="Filter by tag (repeatable)")
@list_options
@click.option("--sort", type=click.Choice(SORT_KEYS), default="number", show_default=True)
@click.pass_obj
@handle_errors
def issue_list(obj, project, milestone, tag, status, priority, search, group, output_json, sort):
    """List issues."""
    criteria = Criteria.build(
        project=project,
        milestone=milestone,
        status=status,
        priority=priority,
        tag=tag,
        search=search,
    )
    items = lib.list_entities(get_workspace(obj), EntityKind.ISSUE, criteria, sort)
    print_entities(EntityKind.ISSUE, items, group, output_json)


@issue_group.command("show")
@click.argument("issue_ref")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def issue_show(obj, issue_ref, output_json):
    """Show an issue, e.g. 'pillar issue show ALPH/001'."""
    project, number = lib.parse_issue_ref(issue_ref)
    issue = get_workspace(obj).store.load_issue(project, number)
    if output_json:
        print_json(entity_to_dict(issue))
    else:
        print_details(issue)


@issue_group.command("edit")
@click.argument("issue_ref")
@click.option("--title")
@click.option("--status", type=click.Choice(STATUS_CHOICES, case_sensitive=False))
@click.option("--priority", "-p", type=click.Choice(PRIORITY_CHOICES, case_sensitive=False))
@click.option("--milestone", "-m", help="Milestone title (empty to clear)")
@click.option("--tags", "-t", help="Comma-separated tags (replaces existing)")
@click.option("--description", "-d")
@click.pass_obj
@handle_errors
def issue_edit(obj, issue_ref, title, status, priority, milestone, tags, description):
    """Edit an issue, e.g. 'pillar issue edit ALPH/001 --status done'."""
    project, number = lib.parse_issue_ref(issue_ref)
    changes = collect_changes(
        title=title,
        status=status,
        priority=priority,
        milestone=milestone,
        tags=tags,
        description=description,
    )
    issue = lib.edit_issue(get_workspace(obj), project, number, changes)
    console.print(f"[green]✓[/] Updated issue {escape(entity_key(issue))}")
    print_changes(changes)


# =============================================================================
# comment
# =============================================================================

KIND_ARG = click.Choice([k.value for k in EntityKind], case_sensitive=False)


@cli.group("comment")
def comment_group():
    """Add and list comments."""


@comment_group.command("add")
@click.argument("kind", type=KIND_ARG)
@click.argument("project")
@click.argument("identifier", required=False)
@click.option("--message", "-m", required=True, help="Comment content (Markdown)")
@click.option("--author", help="Author (default: git user.name, then $USER)")
@click.pass_obj
@handle_errors
def comment_add(obj, kind, project, identifier, message, author):
    """Add a comment to a project, milestone or issue.

    \b
    Examples:
        pillar comment add project ALPH -m "Kickoff done"
        pillar comment add milestone ALPH v1.0 -m "Scope frozen"
        pillar comment add issue ALPH 1 -m "Reproduced"
    """
    ref = EntityRef.build(kind, project, identifier)
    comment = lib.add_comment(get_workspace(obj), ref, message, author=author)
    console.print(
        f"[green]✓[/] Added comment by {escape(comment.author)} "
        f"to {ref.kind.value} '{escape(str(ref))}'"
    )


@comment_group.command("list")
@click.argument("kind", type=KIND_ARG)
@click.argument("project")
@click.argument("identifier", required=False)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def comment_list(obj, kind, project, identifier, output_json):
    """List comments on a project, milestone or issue."""
    ref = EntityRef.build(kind, project, identifier)
    comments = lib.list_comments(get_workspace(obj), ref)
    if output_json:
        print_json([comment_to_dict(c) for c in comments])
        return
    if not comments:
        console.print(f"No comments on {ref.kind.value} '{escape(str(ref))}'")
        return
    console.print(f"Comments on {ref.kind.value} '{escape(str(ref))}':\n")
    for comment in comments:
        console.print(
            f"[dim]{escape('[' + comment.timestamp + ']')}[/] - [bold]{escape(comment.author)}[/]"
        )
        console.out(comment.content + "\n", highlight=False)


# =============================================================================
# board
# =============================================================================


@cli.command("board")
@click.argument("project", required=False)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def board_cmd(obj, project, output_json):
    """Show issues in one column per status, for PROJECT or all projects."""
    columns = lib.board(get_workspace(obj), project)
    if output_json:
        print_json(
            [
                {"status": c.label, "issues": [entity_to_dict(i) for i in c.items]}
                for c in columns
            ]
        )
        return

    console.print(f"[bold]Board: {escape(project) if project else 'All Projects'}[/]")
    for column in columns:
        heading = column.label.replace("-", " ").title()
        style = STATUS_STYLES.get(column.label, "white")
        console.print(f"\n[bold {style}]{heading}[/] ({len(column.items)})")
        if not column.items:
            console.print("  [dim](none)[/]")
        for issue in column.items:
            console.print(
                f"  • {escape(issue.project)} / {escape(issue.title)} "
                f"\\[{styled_priority(issue.priority)}]"
            )


# =============================================================================
# search / export / status
# =============================================================================


@cli.command("search")
@click.argument("query")
@click.option(
    "--type", "kind", type=click.Choice(lib.KIND_CHOICES), default="all", show_default=True
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def search_cmd(obj, query, kind, output_json):
    """Search titles, descriptions and tags."""
    results = lib.search(get_workspace(obj), query, kind)
    if output_json:
        print_json({key: [entity_to_dict(e) for e in items] for key, items in results.items()})
        return

    if not any(results.values()):
        console.print(f"[yellow]No results found for '{escape(query)}'[/]")
        return
    for key, items in results.items():
        if not items:
            continue
        console.print(f"[bold green]{key.title()}:[/]")
        for e in items:
            line = f"  {escape(entity_key(e))} - [bold]{escape(e.title)}[/] \\[{e.status.value}]"
            if isinstance(e, (Project, Issue)):
                line += f" \\[{e.priority.value}]"
            console.print(line)
        console.print()


@cli.command("export")
@click.option(
    "--format", "fmt", type=click.Choice(lib.EXPORT_FORMATS), default="json", show_default=True
)
@click.option(
    "--type", "kind", type=click.Choice(lib.KIND_CHOICES), default="all", show_default=True
)
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to file"
)
@click.pass_obj
@handle_errors
def export_cmd(obj, fmt, kind, output):
    """Export entities as JSON or CSV."""
    text = lib.export(get_workspace(obj), fmt, kind)
    if output is None:
        click.echo(text, nl=False)
        return
    try:
        output.write_text(text, encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Error: Failed to write {escape(str(output))}: {escape(str(e))}[/]")
        sys.exit(1)
    console.print(f"Exported to: {escape(str(output))}")


@cli.command("status")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def status_cmd(obj, output_json):
    """Show a summary of the workspace."""
    status = lib.workspace_status(get_workspace(obj))
    if output_json:
        print_json(status.to_dict())
        return

    if status.project_count == 0:
        console.print("No projects in workspace.")
        return

    console.print("[bold]Workspace Status[/]\n")

    if status.active_projects:
        console.print("[bold]Active Projects:[/]")
        for project, in_progress in status.active_projects:
            console.print(f"  • {escape(project.name)} ({in_progress} issues in progress)")
        console.print()

    if status.in_progress_issues:
        console.print("[bold]Issues In Progress:[/]")
        for issue in status.in_progress_issues:
            console.print(
                f"  • {escape(entity_key(issue))} {escape(issue.title)} "
                f"\\[{styled_priority(issue.priority)}]"
            )
        console.print()

    if status.upcoming_milestones:
        console.print("[bold]Upcoming Milestones:[/]")
        for milestone in status.upcoming_milestones:
            console.print(
                f"  • {escape(milestone.project)} / {escape(milestone.title)} "
                f"({milestone.target_date})"
            )
        console.print()

    table = Table(title="Summary", show_header=False, title_style="bold")
    table.add_column("Category", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Projects", str(status.project_count))
    table.add_row("Issues", str(status.issue_count))
    table.add_row("Completed", str(status.completed_count))
    table.add_row("Todo", str(status.todo_count))
    console.print(table)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int)
@click.pass_obj
@handle_errors
def serve_cmd(obj, host, port):
    """Serve the HTTP API for this workspace."""
    from pillar.api import serve

    ws = get_workspace(obj)
    console.print(f"Starting Pillar API on http://{host}:{port}")
    serve(ws, host=host, port=port)


if __name__ == "__main__":
    cli()
