"""agentloop CLI -- inspect persisted agent sessions.

This module is NEVER imported from agentloop/__init__.py.
It is only loaded via the ``agentloop`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click

from agentloop.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from agentloop.storage.store import SqliteSessionStore


@click.group()
@click.option(
    "--db",
    default=".agentloop.db",
    envvar="AGENTLOOP_DB",
    help="Path to the session database.",
)
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """agentloop: inspect autonomous coding-agent sessions."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db


def _open_store(ctx: click.Context) -> SqliteSessionStore:
    """Open the session store named by ``--db``.

    A missing database file is an error rather than silently creating one.
    """
    from agentloop.storage.store import SqliteSessionStore

    db_path = ctx.obj["db_path"]
    if db_path != ":memory:" and not os.path.exists(db_path):
        raise click.ClickException(f"Database not found: {db_path}")
    return SqliteSessionStore(db_path)


@contextmanager
def _store_session(ctx: click.Context) -> Iterator[tuple[SqliteSessionStore, Console]]:
    """Open the store, yield (store, console), and format failures as CLI errors."""
    console = get_console()
    try:
        store = _open_store(ctx)
        try:
            yield store, console
        finally:
            store.close()
    except SystemExit:
        raise
    except click.ClickException as e:
        format_error(e.format_message(), console)
        raise SystemExit(1) from None
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from agentloop.cli.commands.log import log  # noqa: E402
from agentloop.cli.commands.sessions import sessions  # noqa: E402
from agentloop.cli.commands.status import status  # noqa: E402

cli.add_command(sessions)
cli.add_command(status)
cli.add_command(log)
