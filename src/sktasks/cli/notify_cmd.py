"""Notify commands: watch."""

from __future__ import annotations

import threading
from pathlib import Path

import click

from ._common import TASKS_HOME, console, fail, require_context
from ..notifier import DelegationNotifier, SyncNotifier, connect_engine, create_bus
from ..sync.engine import SyncEngine


def register_notify_commands(main: click.Group) -> None:
    """Register the notify command group."""

    @main.group()
    def notify():
        """Listen for peers' change notices and delegation manifests."""

    @notify.command("watch")
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--interval", type=float, default=None, help="Poll seconds.")
    def notify_watch(home, interval):
        """Sync whenever a peer says something changed. Ctrl-C to stop."""
        require_context(home)
        home_path = Path(home).expanduser()
        engine = SyncEngine.from_home(home_path)
        config = engine.config.notifier
        if not config.enabled:
            fail("Notifications are disabled in config")

        bus = create_bus(config, home_path)
        poll = interval or config.poll_interval_seconds
        notices = SyncNotifier(
            engine.context, bus,
            subject=config.subject,
            min_interval=config.min_publish_interval,
            replay_window=config.replay_window_seconds,
            poll_interval=poll,
        )
        manifests = DelegationNotifier(
            engine.context, bus, subject=config.subject, poll_interval=poll,
        )
        connect_engine(engine, notices, manifests)

        notices.start()
        manifests.start()
        engine.start()
        console.print(f"\n  [green]Watching[/] [dim](poll every {poll}s, Ctrl-C to stop)[/]")
        stop_event = threading.Event()
        try:
            while not stop_event.is_set():
                stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            console.print("\n  [dim]Stopping...[/]")
        finally:
            notices.stop()
            manifests.stop()
            engine.stop()
