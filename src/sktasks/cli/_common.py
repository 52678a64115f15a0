"""Shared utilities for all CLI command modules.

Provides the Rich console instance, formatting helpers, and the
loaders every command uses to get from --home to working objects.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import TASKS_HOME
from ..identity import ExecutionContext, load_context
from ..sync.models import Record
from ..sync.store import RecordStore
from ..tasks import TaskPriority, TaskState

console = Console()
logger = logging.getLogger("sktasks.cli")

ID_DISPLAY_LENGTH = 13


def fail(message: str) -> None:
    """Print a short error and exit 1."""
    console.print(f"[bold red]Error:[/] {message}")
    sys.exit(1)


def require_context(home: str) -> tuple[Path, ExecutionContext]:
    """Resolve --home and load the identity, or exit with a hint.

    Returns:
        Tuple of (home path, execution context).
    """
    home_path = Path(home).expanduser()
    try:
        return home_path, load_context(home_path)
    except FileNotFoundError:
        console.print("[bold red]No identity found.[/] Run [cyan]sktasks init[/] first.")
        sys.exit(1)


def resolve_record(store: RecordStore, prefix: str, owner: Optional[str] = None) -> Record:
    """Find a record by full id or unique id prefix, or exit."""
    exact = store.get(prefix)
    if exact is not None:
        return exact
    matches = [
        r for r in store.all()
        if r.record_id.startswith(prefix) and (owner is None or r.owner == owner)
    ]
    if not matches:
        fail(f"No task matches '{prefix}'")
    if len(matches) > 1:
        fail(f"'{prefix}' is ambiguous ({len(matches)} tasks)")
    return matches[0]


def short_record_id(record_id: str) -> str:
    return record_id[:ID_DISPLAY_LENGTH]


def state_icon(state: str) -> str:
    """Map a task state to a Rich-formatted label."""
    return {
        TaskState.NEW.value: "[dim]new[/]",
        TaskState.READY.value: "[cyan]ready[/]",
        TaskState.IN_PROGRESS.value: "[bold yellow]in progress[/]",
        TaskState.DONE.value: "[green]done[/]",
    }.get(state, f"[red]{state}[/]")


def priority_icon(priority: str) -> str:
    """Map a task priority to a Rich-formatted label."""
    return {
        TaskPriority.SAND.value: "[dim]sand[/]",
        TaskPriority.PEBBLE.value: "pebble",
        TaskPriority.ROCK.value: "[bold]rock[/]",
        TaskPriority.BOULDER.value: "[bold red]boulder[/]",
    }.get(priority, priority)
