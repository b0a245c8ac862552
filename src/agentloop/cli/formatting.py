"""Rich formatting helpers for the agentloop CLI.

Provides functions that format stored sessions for terminal display.
Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentloop.engine.text import truncate_for_display

if TYPE_CHECKING:
    from agentloop.models.messages import Message
    from agentloop.models.results import ContextUsage
    from agentloop.models.session import Session
    from agentloop.storage.store import SessionSummary

_ROLE_STYLES = {
    "system": "magenta",
    "user": "cyan",
    "assistant": "green",
    "tool": "yellow",
}


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def _status_markup(status: str) -> str:
    if status == "active":
        return "[cyan]active[/cyan]"
    if status == "completed":
        return "[green]completed[/green]"
    return f"[red]{escape(status)}[/red]"


def format_sessions(entries: list[SessionSummary], console: Console) -> None:
    """Display stored sessions as a table."""
    if not entries:
        console.print("[dim]No sessions.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Session", style="yellow")
    table.add_column("Updated", style="dim")
    table.add_column("Turn", justify="right")
    table.add_column("Msgs", justify="right")
    table.add_column("Tokens", justify="right", style="green")
    table.add_column("Status")

    for entry in entries:
        table.add_row(
            entry.session_id[:12],
            entry.updated_at.strftime("%Y-%m-%d %H:%M"),
            str(entry.turn),
            str(entry.message_count),
            str(entry.history_tokens),
            _status_markup(entry.status),
        )

    console.print(table)


def format_status(session: Session, usage: ContextUsage, console: Console) -> None:
    """Display one session's state and context usage."""
    status = (session.termination_reason or "terminated") if session.terminated else "active"
    console.print(f"Session [yellow]{escape(session.session_id)}[/yellow]  {_status_markup(status)}")
    console.print(f"  Turn:     {session.turn}")
    console.print(f"  Messages: {len(session.messages)}")
    console.print(f"  Usage:    {session.input_tokens} in / {session.output_tokens} out")

    # Context bar counts reserved output tokens against the window.
    pct = usage.percentage / 100.0
    bar_width = 30
    filled = min(int(pct * bar_width), bar_width)
    bar = "#" * filled + "-" * (bar_width - filled)

    if pct > 0.9:
        color = "red"
    elif pct > 0.7:
        color = "yellow"
    else:
        color = "green"

    console.print(
        f"  Context:  [{color}]{usage.used}[/{color}] + {usage.reserved} reserved / {usage.max_tokens} "
        f"[{color}][{bar}][/{color}] {pct:.0%}"
    )
    if usage.should_compact:
        console.print("  [yellow]Next turn will compact history.[/yellow]")

    console.print(f"  Created:  [dim]{session.created_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]")
    console.print(f"  Updated:  [dim]{session.updated_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]")


def _kind_label(message: Message) -> str:
    kind = message.kind.value
    return kind if not message.pinned else f"{kind}*"


def format_log_compact(entries: list[tuple[int, Message]], console: Console) -> None:
    """Display message history in compact table format."""
    if not entries:
        console.print("[dim]No messages.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Turn", justify="right")
    table.add_column("Role", width=9)
    table.add_column("Kind", style="dim")
    table.add_column("Tokens", justify="right", style="green")
    table.add_column("Content")

    for index, message in entries:
        role = message.role.value
        style = _ROLE_STYLES.get(role, "")
        table.add_row(
            str(index),
            str(message.turn),
            f"[{style}]{role}[/{style}]" if style else role,
            _kind_label(message),
            str(message.token_cost),
            escape(truncate_for_display(message.render_text())),
        )

    console.print(table)


def format_log_verbose(entries: list[tuple[int, Message]], console: Console) -> None:
    """Display message history with full content."""
    if not entries:
        console.print("[dim]No messages.[/dim]")
        return

    for i, (index, message) in enumerate(entries):
        if i > 0:
            console.print()

        role = message.role.value
        style = _ROLE_STYLES.get(role, "bold")
        console.print(f"[{style}]message {index}: {role}[/{style}]")
        console.print(f"  Turn:    {message.turn}")
        console.print(f"  Kind:    {message.kind.value}")
        console.print(f"  Tokens:  [green]{message.token_cost}[/green]")
        if message.pinned:
            console.print("  Pinned:  yes")
        for call in message.tool_calls:
            console.print(f"  Call:    [cyan]{escape(call.name)}[/cyan] ({escape(call.id)})")
        for result in message.tool_results:
            mark = "[green]ok[/green]" if result.success else "[red]failed[/red]"
            console.print(f"  Result:  {escape(result.tool_name)} ({escape(result.call_id)}) {mark}")
        text = message.render_text()
        if text:
            console.print()
            for line in text.splitlines():
                console.print(f"    {escape(line)}", highlight=False)


def format_error(message: str, console: Console) -> None:
    """Display an error message in red."""
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
