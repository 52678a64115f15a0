"""Delegation commands: grant, revoke, list."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import TASKS_HOME, console, fail, require_context, resolve_record
from ..config import load_config
from ..delegation import DelegationManager
from ..identity import InvalidIdentity, short_id
from ..notifier import DelegationNotifier, create_bus
from ..sync.backends import create_remote_store
from ..sync.errors import SyncError
from ..sync.models import Permission
from ..sync.store import RecordStore


def _manager(home: str) -> DelegationManager:
    home_path, ctx = require_context(home)
    config = load_config(home_path)
    store = RecordStore(home_path)
    notifier = None
    if config.notifier.enabled:
        notifier = DelegationNotifier(
            ctx, create_bus(config.notifier, home_path), subject=config.notifier.subject,
        )
    return DelegationManager(
        ctx,
        store,
        create_remote_store(config.remote, ctx, home_path),
        notifier=notifier,
        collection=config.collections[0],
    )


def register_delegate_commands(main: click.Group) -> None:
    """Register the delegate command group."""

    @main.group()
    def delegate():
        """Share tasks with other people and agents.

        Grants take effect for the delegate after your next sync,
        when the records are re-sealed to include them.
        """

    @delegate.command("grant")
    @click.argument("delegate_id")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--write", is_flag=True, help="Allow edits (implies read).")
    @click.option("--record", "record_prefix", default=None, help="Only this task.")
    def delegate_grant(delegate_id, home, write, record_prefix):
        """Grant a delegate access to your tasks."""
        manager = _manager(home)
        record_id = None
        if record_prefix:
            record_id = resolve_record(manager.store, record_prefix, owner=manager.me).record_id
        permission = Permission.WRITE if write else Permission.READ
        try:
            manager.grant(delegate_id, permission, record_id=record_id)
        except (InvalidIdentity, ValueError, KeyError, SyncError) as exc:
            fail(str(exc))
        console.print(
            f"  [green]Granted[/] {permission.value} to [cyan]{short_id(delegate_id)}[/]"
            f" on {record_id or 'all tasks'}"
        )
        console.print("  [dim]Run [cyan]sktasks sync run[/] to re-seal.[/]")

    @delegate.command("revoke")
    @click.argument("delegate_id")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--record", "record_prefix", default=None, help="Only this task.")
    def delegate_revoke(delegate_id, home, record_prefix):
        """Revoke a delegate's access."""
        manager = _manager(home)
        record_id = None
        if record_prefix:
            record_id = resolve_record(manager.store, record_prefix, owner=manager.me).record_id
        try:
            changed = manager.revoke(delegate_id, record_id=record_id)
        except (InvalidIdentity, ValueError, KeyError, SyncError) as exc:
            fail(str(exc))
        console.print(
            f"  [yellow]Revoked[/] [cyan]{short_id(delegate_id)}[/] from {changed} task(s)"
        )

    @delegate.command("list")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    def delegate_list(home):
        """Show who can read or edit your tasks."""
        manager = _manager(home)
        try:
            grants = manager.list()
        except SyncError as exc:
            console.print(f"  [yellow]Remote grants unavailable:[/] {exc}")
            grants = []
        local = manager.delegates()

        delegates = sorted({g.delegate for g in grants} | set(local))
        if not delegates:
            console.print("\n  [dim]No delegates.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Delegate", style="cyan")
        table.add_column("Remote grant")
        table.add_column("Read", justify="right")
        table.add_column("Write", justify="right")

        for delegate_id in delegates:
            scopes = [
                f"{'/'.join(p.value for p in g.permissions)}"
                f"{'' if g.record_id is None else ' (' + g.record_id[:13] + ')'}"
                for g in grants if g.delegate == delegate_id
            ]
            counts = local.get(delegate_id, {"read": 0, "write": 0})
            table.add_row(
                short_id(delegate_id),
                ", ".join(scopes) or "[dim]none[/]",
                str(counts["read"]),
                str(counts["write"]),
            )

        console.print()
        console.print(table)
        console.print()
