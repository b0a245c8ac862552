"""Summarization prompts for history compaction.

Provides system prompts and a user prompt builder for provider-backed
summarization of compacted history.

- **HISTORY_SUMMARIZE_SYSTEM** -- for a mixed run of narration, tool
  calls and tool results from a coding agent's session.
- **TOOL_SUMMARIZE_SYSTEM** -- for runs made only of tool-call /
  tool-result exchanges.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# History -- default for compaction of mixed runs
# ---------------------------------------------------------------------------

HISTORY_SUMMARIZE_SYSTEM: str = (
    "You are compacting the working history of an autonomous coding agent. "
    "Produce concise summaries of the provided segment so the agent can "
    "continue its task without the original messages.\n\n"
    "Guidelines:\n"
    "- Preserve specific details: file paths, function names, commands run, "
    "error messages, test results, and decisions taken.\n"
    "- Record what has been completed and what was left unfinished.\n"
    "- Omit raw file contents, full directory listings and other bulk output; "
    "state what they showed instead.\n"
    "- Write in terse third-person prose or bullet points.\n"
    "- If a target token count is specified, aim for approximately that length."
)

# ---------------------------------------------------------------------------
# Tool calls -- for runs made only of tool exchanges
# ---------------------------------------------------------------------------

TOOL_SUMMARIZE_SYSTEM: str = (
    "You are summarizing tool-call interactions from a coding agent's workflow. "
    "The content contains tool calls and their results. "
    "Distill the sequence into a concise summary of what happened and what "
    "was found.\n\n"
    "Guidelines:\n"
    "- Focus on OUTCOMES: what was run, read or changed, what came back, and "
    "any errors encountered.\n"
    "- Preserve key findings: specific values, line numbers, file paths, "
    "exit codes and error messages.\n"
    "- Summarize the sequence as a whole, not each call individually.\n"
    "- If a target token count is specified, aim for approximately that length."
)


def build_summarize_prompt(
    messages_text: str,
    *,
    target_tokens: int | None = None,
    instructions: str | None = None,
) -> str:
    """Build the user prompt for summarization.

    Args:
        messages_text: The history segment to summarize, with role labels.
        target_tokens: Optional target token count for the summary.
        instructions: Extra guidance appended as "Additional instructions".

    Returns:
        The formatted user prompt string.
    """
    prompt = f"Summarize the following segment of the agent's history:\n\n{messages_text}"

    if target_tokens is not None:
        prompt += f"\n\nTarget approximately {target_tokens} tokens."

    if instructions is not None:
        prompt += f"\nAdditional instructions: {instructions}"

    return prompt
