"""Engine-authored corrective and continuation prompts.

These are injected as user messages of kind ``CORRECTIVE`` when the
model needs a nudge: a malformed tool call, a response cut off
mid-call, or an autonomous run that stopped before finishing.
"""

from __future__ import annotations

MALFORMED_TOOL_CALL_PROMPT: str = (
    "Your previous tool call could not be parsed: {detail}\n"
    'Emit tool calls as a single JSON object on its own line: '
    '{{"tool": "<name>", "args": {{...}}}}'
)

INCOMPLETE_TOOL_CALL_PROMPT: str = (
    "Your previous response was cut off mid-tool-call. "
    "Please complete the tool call and continue."
)

UNEXECUTED_TOOL_CALL_PROMPT: str = (
    "Your previous response contained a tool call that was not executed. "
    "Please issue the tool call again and continue."
)

CONTINUE_PROMPT: str = "Please continue until you are done. Provide a summary when complete."

TRUNCATED_RESPONSE_PROMPT: str = (
    "Your previous response hit the output token limit. "
    "Continue exactly where you left off."
)


def build_malformed_tool_call_prompt(detail: str) -> str:
    """Corrective prompt telling the model its tool call was unusable."""
    return MALFORMED_TOOL_CALL_PROMPT.format(detail=detail or "unknown error")
