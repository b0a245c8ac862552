"""agentloop log -- show a session's message history."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_log_compact, format_log_verbose


@click.command()
@click.argument("session_id")
@click.option("-n", "--limit", default=20, type=int, help="Maximum number of messages to show (most recent).")
@click.option("-v", "--verbose", is_flag=True, help="Show full message content.")
@click.pass_context
def log(ctx: click.Context, session_id: str, limit: int, verbose: bool) -> None:
    """Show message history (role, kind, turn, tokens, preview)."""
    from agentloop.cli import _store_session

    with _store_session(ctx) as (store, console):
        session = store.load(session_id)
        offset = max(len(session.messages) - limit, 0) if limit > 0 else 0
        entries = list(enumerate(session.messages))[offset:]
        if verbose:
            format_log_verbose(entries, console)
        else:
            format_log_compact(entries, console)
