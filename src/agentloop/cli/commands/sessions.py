"""agentloop sessions -- list stored sessions."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_sessions


@click.command()
@click.option("-n", "--limit", default=None, type=int, help="Maximum number of sessions to show.")
@click.pass_context
def sessions(ctx: click.Context, limit: int | None) -> None:
    """List stored sessions, most recently updated first."""
    from agentloop.cli import _store_session

    with _store_session(ctx) as (store, console):
        format_sessions(store.list_sessions(limit=limit), console)
