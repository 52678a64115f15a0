"""Setup commands: init, whoami."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ._common import TASKS_HOME, console, require_context
from ..config import load_config, save_config
from ..identity import create_identity, get_device_id
from ..sync.models import RemoteKind


def register_setup_commands(main: click.Group) -> None:
    """Register init and whoami."""

    @main.command()
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--name", "-n", default=None, help="Human label for this identity.")
    @click.option("--force", is_flag=True, help="Replace an existing identity.")
    @click.option(
        "--remote-path", default=None, type=click.Path(),
        help="Use a shared folder (USB, NAS, Syncthing) as the remote store.",
    )
    @click.option("--remote-url", default=None, help="Use an HTTP record service.")
    def init(home: str, name: Optional[str], force: bool,
             remote_path: Optional[str], remote_url: Optional[str]):
        """Create an identity and a default configuration."""
        home_path = Path(home).expanduser()
        try:
            identity = create_identity(home_path, name=name, force=force)
        except FileExistsError:
            console.print(
                "[yellow]An identity already exists.[/] Use --force to replace it."
            )
            sys.exit(1)

        config = load_config(home_path)
        if remote_url:
            config.remote.kind = RemoteKind.HTTP
            config.remote.base_url = remote_url
        elif remote_path:
            config.remote.kind = RemoteKind.LOCAL
            config.remote.local_path = Path(remote_path).expanduser()
        save_config(home_path, config)
        device_id = get_device_id(home_path)

        console.print()
        console.print(
            Panel(
                f"Name: [cyan]{name or '-'}[/]\n"
                f"Public id: [bold]{identity.public_id}[/]\n"
                f"Device: [dim]{device_id}[/]\n"
                f"Remote: [cyan]{config.remote.kind.value}[/]",
                title="Identity created",
                border_style="green",
            )
        )
        console.print("  [dim]Share your public id with people who delegate to you.[/]\n")

    @main.command()
    @click.option("--home", default=TASKS_HOME, type=click.Path())
    @click.option("--short", is_flag=True, help="Print only the public id.")
    def whoami(home: str, short: bool):
        """Show this identity and device."""
        _, ctx = require_context(home)
        if short:
            click.echo(ctx.public_id)
            return
        console.print()
        console.print(
            Panel(
                f"Name: [cyan]{ctx.identity.name or '-'}[/]\n"
                f"Public id: [bold]{ctx.public_id}[/]\n"
                f"Device: [dim]{ctx.device_id}[/]",
                title="Who am I",
                border_style="cyan",
            )
        )
        console.print()
