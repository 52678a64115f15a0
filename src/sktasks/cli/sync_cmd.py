"""Sync commands: run, status, configure."""

from __future__ import annotations

from pathlib import Path

import click
from rich.panel import Panel

from ._common import TASKS_HOME, console, fail, require_context
from ..config import load_config, save_config
from ..identity import short_id
from ..notifier import SyncNotifier, create_bus
from ..sync.engine import SyncEngine
from ..sync.errors import SyncError
from ..sync.models import RemoteKind, SyncResult


def _print_result(result: SyncResult) -> None:
    label = f"{short_id(result.owner)}/{result.collection}"
    if result.deferred:
        console.print(f"  [dim]{label}: pass already running, queued[/]")
        return
    console.print(
        f"  [cyan]{label}[/]: "
        f"pulled [bold]{result.pulled}[/], updated [bold]{result.updated}[/], "
        f"removed [bold]{result.removed}[/], pushed [bold]{result.pushed}[/]"
    )
    if result.kept_local:
        console.print(f"    [yellow]{result.kept_local} local edit(s) kept over older remote versions[/]")
    if result.resealed:
        console.print(f"    [dim]{result.resealed} record(s) re-sealed for delegates[/]")
    if result.placeholders:
        console.print(f"    [yellow]{result.placeholders} unreadable record(s) hidden[/]")
    if result.denied:
        console.print(
            f"    [red]{len(result.denied)} record(s) refused (read-only access); kept locally[/]"
        )
    for error in result.errors:
        console.print(f"    [red]{error}[/]")


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Replicate sealed records with the remote store.

        Pull first, then push. The remote store never sees plaintext.
        """

    @sync.command("run")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--owner", default=None, help="Sync an owner who delegated to you.")
    @click.option("--collection", default=None)
    @click.option("--all", "sync_all", is_flag=True, help="Every owner and collection.")
    def sync_run(home, owner, collection, sync_all):
        """Run a sync pass now."""
        require_context(home)
        home_path = Path(home).expanduser()
        engine = SyncEngine.from_home(home_path)

        console.print()
        try:
            if sync_all:
                results = engine.sync_all()
            else:
                results = [engine.sync(owner=owner, collection=collection)]
        except SyncError as exc:
            fail(f"Sync failed, local data untouched: {exc}")

        for result in results:
            _print_result(result)

        notifier_config = engine.config.notifier
        if notifier_config.enabled:
            notifier = SyncNotifier(
                engine.context,
                create_bus(notifier_config, home_path),
                subject=notifier_config.subject,
                min_interval=notifier_config.min_publish_interval,
            )
            sent = sum(notifier.announce(r, engine.store) for r in results)
            if sent:
                console.print(f"  [dim]Notified {sent} peer(s)[/]")
        console.print()

    @sync.command("status")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    def sync_status(home):
        """Show sync state and pending records."""
        require_context(home)
        engine = SyncEngine.from_home(Path(home).expanduser())
        info = engine.status()
        state = info["state"]
        remote = info["remote"]

        available = "[green]reachable[/]" if remote["available"] else "[red]unreachable[/]"
        console.print()
        console.print(
            Panel(
                f"Remote: [cyan]{remote['name']}[/] ({available})\n"
                f"Records: [bold]{info['records']}[/]  "
                f"Pending: [bold]{info['pending']}[/]\n"
                f"Passes: {state['pass_count']}  "
                f"Pushed: {state['pushed_total']}  Pulled: {state['pulled_total']}\n"
                f"Last sync: {state['last_sync'] or '[dim]never[/]'}\n"
                f"Last success: {state['last_success'] or '[dim]never[/]'}\n"
                f"Last error: {state['last_error'] or '[dim]none[/]'}\n"
                f"Tracked owners: {len(info['tracked_owners'])}",
                title="Sync",
                border_style="magenta",
            )
        )
        console.print()

    @sync.command("configure")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--kind", type=click.Choice([k.value for k in RemoteKind]), default=None)
    @click.option("--url", default=None, help="HTTP record service base URL.")
    @click.option("--path", "local_path", default=None, type=click.Path())
    @click.option("--app-id", default=None)
    @click.option("--timeout", type=float, default=None)
    @click.option("--interval", type=int, default=None, help="Background sync seconds.")
    @click.option("--track", "track", multiple=True, help="Owner id to follow.")
    @click.option("--untrack", "untrack", multiple=True, help="Owner id to stop following.")
    def sync_configure(home, kind, url, local_path, app_id, timeout, interval, track, untrack):
        """Change remote store and sync settings."""
        home_path = Path(home).expanduser()
        config = load_config(home_path)

        if kind is not None:
            config.remote.kind = RemoteKind(kind)
        if url is not None:
            config.remote.base_url = url
        if local_path is not None:
            config.remote.local_path = Path(local_path).expanduser()
        if app_id is not None:
            config.remote.app_id = app_id
        if timeout is not None:
            config.remote.timeout_seconds = timeout
        if interval is not None:
            config.background_interval_seconds = interval
        for owner in track:
            if owner not in config.tracked_owners:
                config.tracked_owners.append(owner)
        config.tracked_owners = [o for o in config.tracked_owners if o not in untrack]

        if config.remote.kind == RemoteKind.HTTP and not config.remote.base_url:
            fail("HTTP remote needs --url")

        path = save_config(home_path, config)
        console.print(f"  [green]Saved[/] {path}")
