"""Token estimation implementations for agentloop.

Provides TiktokenEstimator (production use), CharRatioEstimator (no
downloads, deterministic) and NullTokenEstimator (testing). All implement
the TokenEstimator protocol from protocols.py.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentloop.models.messages import Message

# Per-message overhead from the OpenAI cookbook formula
# (role/content/separator tokens).
MESSAGE_OVERHEAD = 3


class TiktokenEstimator:
    """Token estimator using tiktoken (OpenAI's tokenizer).

    Lazily imports tiktoken and caches the Encoding instance.
    Falls back to o200k_base encoding if model is unknown.

    Implements the TokenEstimator protocol.
    """

    def __init__(self, model: str = "gpt-4o", encoding_name: str | None = None) -> None:
        import tiktoken

        if encoding_name is not None:
            self._enc = tiktoken.get_encoding(encoding_name)
        else:
            try:
                self._enc = tiktoken.encoding_for_model(model)
            except KeyError:
                self._enc = tiktoken.get_encoding("o200k_base")

        self._encoding_name = self._enc.name

    @property
    def encoding_name(self) -> str:
        """Name of the tiktoken encoding being used."""
        return self._encoding_name

    def count_text(self, text: str) -> int:
        """Count tokens in a plain text string.

        Returns 0 for the empty string.
        """
        if not text:
            return 0
        return len(self._enc.encode(text, disallowed_special=()))

    def estimate_tokens(self, message: Message) -> int:
        """Estimate a message's cost including per-message overhead.

        Every block is flattened to text (tool calls as name plus JSON
        arguments, tool results as their output), tokenized, and the
        fixed per-message overhead is added.
        """
        return MESSAGE_OVERHEAD + self.count_text(message.render_text())


class CharRatioEstimator:
    """Estimates tokens as characters divided by a fixed ratio.

    Cheap, deterministic and monotonic; needs no tokenizer download.
    The default ratio of 4 characters per token is the usual rule of
    thumb for English prose and code.
    """

    def __init__(self, chars_per_token: float = 4.0, overhead: int = MESSAGE_OVERHEAD) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self._ratio = chars_per_token
        self._overhead = overhead

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._ratio)

    def estimate_tokens(self, message: Message) -> int:
        return self._overhead + self.count_text(message.render_text())


class NullTokenEstimator:
    """Token estimator that always returns 0.

    Useful for testing when token counts are irrelevant.
    """

    def count_text(self, text: str) -> int:
        """Always returns 0."""
        return 0

    def estimate_tokens(self, message: Message) -> int:
        """Always returns 0."""
        return 0
