"""Summarizers used by history compaction.

DigestSummarizer builds a deterministic digest without any model call.
ProviderSummarizer asks the session's provider for a summary, using the
prompts in ``agentloop.prompts.summarize``. Both implement the
Summarizer protocol.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agentloop.engine.parser import clean_llm_tokens
from agentloop.exceptions import CompactionError
from agentloop.models.messages import Message, Role, TextBlock, ToolCallBlock, ToolResultBlock
from agentloop.prompts.summarize import (
    HISTORY_SUMMARIZE_SYSTEM,
    TOOL_SUMMARIZE_SYSTEM,
    build_summarize_prompt,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agentloop.protocols import Provider

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4
_PREVIEW_CHARS = 160


def build_messages_text(messages: Sequence[Message]) -> str:
    """Render messages as ``[role]: text`` blocks for summarization."""
    parts: list[str] = []
    for message in messages:
        text = message.render_text().strip()
        if text:
            parts.append(f"[{message.role.value}]: {text}")
    return "\n\n".join(parts)


def _preview(text: str, width: int = _PREVIEW_CHARS) -> str:
    first = text.strip().split("\n", 1)[0]
    if len(first) > width:
        return first[: width - 3] + "..."
    return first


class DigestSummarizer:
    """Deterministic, model-free summary of a message run.

    Produces one line per notable block: assistant narration previews,
    tool calls with their arguments, and tool outcomes. The digest is
    cut to roughly ``max_tokens``.
    """

    def summarize(self, messages: Sequence[Message], *, max_tokens: int) -> str:
        lines: list[str] = []
        for message in messages:
            for block in message.content:
                if isinstance(block, TextBlock):
                    if block.text.strip() and message.role != Role.TOOL:
                        lines.append(f"- {message.role.value}: {_preview(block.text)}")
                elif isinstance(block, ToolCallBlock):
                    args = ", ".join(f"{k}={v!r}" for k, v in block.arguments.items())
                    lines.append(f"- called {block.name}({_preview(args, 80)})")
                elif isinstance(block, ToolResultBlock):
                    status = "ok" if block.success else "failed"
                    lines.append(f"  -> {block.tool_name} {status}: {_preview(block.output_text, 100)}")

        digest = "\n".join(lines)
        limit = max_tokens * _CHARS_PER_TOKEN
        if len(digest) > limit:
            digest = digest[: max(limit - 4, 0)].rstrip() + "\n..."
        return digest


class ProviderSummarizer:
    """Summarizes a message run by asking a Provider.

    Args:
        provider: Provider used for the summary request.
        model: Optional model override for the request config.
        instructions: Extra guidance appended to the prompt.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        model: str | None = None,
        instructions: str | None = None,
    ) -> None:
        self._provider = provider
        self._model = model
        self._instructions = instructions

    def summarize(self, messages: Sequence[Message], *, max_tokens: int) -> str:
        """Request a summary of *messages*.

        Raises:
            CompactionError: If the provider returns no text.
        """
        only_tools = all(
            m.role == Role.TOOL or (m.role == Role.ASSISTANT and m.tool_calls) for m in messages
        )
        system = TOOL_SUMMARIZE_SYSTEM if only_tools else HISTORY_SUMMARIZE_SYSTEM
        prompt = build_summarize_prompt(
            build_messages_text(messages),
            target_tokens=max_tokens,
            instructions=self._instructions,
        )
        request = [Message.system(system), Message.user(prompt)]
        config: dict[str, Any] = {"max_tokens": max_tokens}
        if self._model:
            config["model"] = self._model

        parts = [chunk.text for chunk in self._provider.stream_completion(request, [], config) if chunk.text]
        summary = clean_llm_tokens("".join(parts)).strip()
        if not summary:
            raise CompactionError("Provider returned empty summary")
        logger.debug("Provider summary: %d chars for %d messages", len(summary), len(messages))
        return summary
