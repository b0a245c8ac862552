"""Small text helpers shared by the engine and the CLI."""

from __future__ import annotations

TIMING_MARKER = "⏱️"
APPROVAL_MARKER = "IMPLEMENTATION_APPROVED"


def strip_timing(text: str) -> str:
    """Remove a trailing timing footer (``\\n⏱️ ...``) if present."""
    pos = text.rfind("\n" + TIMING_MARKER)
    if pos != -1:
        return text[:pos]
    if text.lstrip().startswith(TIMING_MARKER):
        return ""
    return text


def is_empty_response(text: str) -> bool:
    """True for a response with no substance.

    Whitespace and timing footers do not count as content.
    """
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith(TIMING_MARKER):
            return False
    return True


def extract_last_block(text: str) -> str:
    """Last non-empty paragraph of *text*, timing footer removed."""
    content = strip_timing(text)
    for block in reversed(content.split("\n\n")):
        if block.strip():
            return block.strip()
    return content.strip()


def format_duration(ms: float) -> str:
    """Human-readable duration: ``500ms``, ``1.5s``, ``1m 30.0s``."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60_000)
    seconds = (ms % 60_000) / 1000
    return f"{minutes}m {seconds:.1f}s"


def truncate_for_display(text: str, width: int = 80) -> str:
    """First line of *text*, cut to *width* characters with ``...``."""
    first = text.strip().split("\n", 1)[0]
    if len(first) <= width:
        return first
    if width <= 3:
        return first[:width]
    return first[: width - 3] + "..."
