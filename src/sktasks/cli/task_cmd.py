"""Task commands: add, list, edit, move, rm."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import (
    TASKS_HOME,
    console,
    fail,
    priority_icon,
    require_context,
    resolve_record,
    short_record_id,
    state_icon,
)
from ..identity import short_id
from ..sync.errors import PermissionDenied
from ..sync.store import RecordStore
from ..tasks import InvalidTransition, TaskPriority, TaskService, TaskState

PRIORITIES = click.Choice([p.value for p in TaskPriority])
STATES = click.Choice([s.value for s in TaskState])


def _service(home: str) -> TaskService:
    home_path, ctx = require_context(home)
    return TaskService(ctx, RecordStore(home_path))


def register_task_commands(main: click.Group) -> None:
    """Register the task command group."""

    @main.group()
    def task():
        """Create and manage tasks.

        Changes stay local and pending until the next sync.
        """

    @task.command("add")
    @click.argument("title")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--description", "-d", default="")
    @click.option("--priority", "-p", type=PRIORITIES, default=TaskPriority.SAND.value)
    @click.option("--tag", "-t", "tags", multiple=True, help="Repeatable.")
    @click.option("--scheduled", default=None, help="ISO date, e.g. 2026-11-02.")
    @click.option("--owner", default=None, help="Create on behalf of an owner (delegates).")
    def task_add(title, home, description, priority, tags, scheduled, owner):
        """Add a task."""
        service = _service(home)
        record = service.create(
            title,
            owner=owner,
            description=description,
            priority=priority,
            tags=list(tags),
            scheduled_for=scheduled,
        )
        console.print(f"  [green]Added[/] [cyan]{short_record_id(record.record_id)}[/] {title}")

    @task.command("list")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--state", "-s", type=STATES, default=None)
    @click.option("--owner", default=None, help="List tasks an owner shares with you.")
    @click.option("--all", "show_all", is_flag=True, help="Include deleted tasks.")
    def task_list(home, state, owner, show_all):
        """List tasks, heaviest first."""
        service = _service(home)
        records = service.list(
            owner=owner,
            include_deleted=show_all,
            state=TaskState(state) if state else None,
        )
        if not records:
            console.print("\n  [dim]No tasks.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("State")
        table.add_column("Priority")
        table.add_column("Tags", style="dim")
        table.add_column("Sync", style="dim")

        for record in records:
            fields = record.fields
            title = fields.get("title", "")
            if record.deleted:
                title = f"[strike]{title}[/]"
            table.add_row(
                short_record_id(record.record_id),
                title,
                state_icon(fields.get("state", "")),
                priority_icon(fields.get("priority", "")),
                ", ".join(fields.get("tags", [])),
                f"v{record.version}" + (" *" if record.pending else ""),
            )

        console.print()
        if owner:
            console.print(f"  [dim]Tasks of {short_id(owner)}[/]")
        console.print(table)
        console.print()

    @task.command("edit")
    @click.argument("task_id")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--title", default=None)
    @click.option("--description", "-d", default=None)
    @click.option("--priority", "-p", type=PRIORITIES, default=None)
    @click.option("--tag", "-t", "tags", multiple=True, help="Replaces all tags.")
    @click.option("--scheduled", default=None)
    @click.option("--assign", default=None, help="Public id of the assignee.")
    def task_edit(task_id, home, title, description, priority, tags, scheduled, assign):
        """Edit a task's fields."""
        service = _service(home)
        record = resolve_record(service.store, task_id)

        changes: dict = {}
        if title is not None:
            changes["title"] = title
        if description is not None:
            changes["description"] = description
        if priority is not None:
            changes["priority"] = priority
        if tags:
            changes["tags"] = list(tags)
        if scheduled is not None:
            changes["scheduled_for"] = scheduled
        if assign is not None:
            changes["assigned_to"] = assign
        if not changes:
            fail("Nothing to change")

        try:
            service.update(record.record_id, **changes)
        except PermissionDenied as exc:
            fail(str(exc))
        console.print(f"  [green]Updated[/] [cyan]{short_record_id(record.record_id)}[/]")

    @task.command("move")
    @click.argument("task_id")
    @click.argument("state", type=STATES)
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    def task_move(task_id, state, home):
        """Move a task to another state."""
        service = _service(home)
        record = resolve_record(service.store, task_id)
        try:
            service.transition(record.record_id, TaskState(state))
        except (InvalidTransition, PermissionDenied) as exc:
            fail(str(exc))
        console.print(
            f"  [cyan]{short_record_id(record.record_id)}[/] -> {state_icon(state)}"
        )

    @task.command("rm")
    @click.argument("task_id")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    def task_rm(task_id, home):
        """Delete a task (removed everywhere after the next sync)."""
        service = _service(home)
        record = resolve_record(service.store, task_id)
        try:
            service.soft_delete(record.record_id)
        except PermissionDenied as exc:
            fail(str(exc))
        console.print(f"  [yellow]Deleted[/] [cyan]{short_record_id(record.record_id)}[/]")
