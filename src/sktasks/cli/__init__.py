"""
SKTasks CLI -- sovereign tasks from the command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module for maintainability.
The main Click group is defined here and all subcommands
are registered via register functions.

Entry point: sktasks.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sktasks")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose):
    """SKTasks -- encrypted tasks, shared on your terms.

    Your tasks. Every device. Only the people and agents you choose.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .task_cmd import register_task_commands
from .sync_cmd import register_sync_commands
from .delegate_cmd import register_delegate_commands
from .notify_cmd import register_notify_commands

register_setup_commands(main)
register_task_commands(main)
register_sync_commands(main)
register_delegate_commands(main)
register_notify_commands(main)
