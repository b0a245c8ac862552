"""agentloop status -- show one session's state."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_status


@click.command()
@click.argument("session_id")
@click.option(
    "--max-tokens",
    default=200_000,
    type=int,
    show_default=True,
    help="Context window to report usage against.",
)
@click.option(
    "--reserved",
    default=16_000,
    type=int,
    show_default=True,
    help="Tokens reserved for the model's output.",
)
@click.pass_context
def status(ctx: click.Context, session_id: str, max_tokens: int, reserved: int) -> None:
    """Show turn, termination state, token totals and context usage."""
    from agentloop.cli import _store_session
    from agentloop.engine.context import ContextWindowManager
    from agentloop.engine.tokens import NullTokenEstimator
    from agentloop.models.config import CompactionPolicy, ContextBudget

    with _store_session(ctx) as (store, console):
        session = store.load(session_id)
        manager = ContextWindowManager(
            ContextBudget(max_tokens=max_tokens, reserved_output_tokens=reserved),
            CompactionPolicy(),
            NullTokenEstimator(),
        )
        format_status(session, manager.usage(session), console)
