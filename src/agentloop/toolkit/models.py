"""Toolkit data models.

A ToolSpec describes one tool the model may call: its JSON Schema
parameters for provider consumption and the callable that runs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    """A single tool definition.

    Attributes:
        name: Tool name (e.g. "list_files", "run_command").
        description: Human-readable description of when/why to use this tool.
        parameters: JSON Schema dict describing tool parameters.
        execute: Callable that runs the tool. Called with the validated
            arguments as keyword arguments, preceded by the
            ExecutionContext when ``pass_context`` is set.
        parallel_safe: Whether the tool may run concurrently with other
            calls from the same turn.
        pass_context: Whether ``execute`` takes the ExecutionContext as
            its first positional argument.
    """

    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    execute: Callable[..., Any] = field(default=lambda **_: "", repr=False, compare=False)
    parallel_safe: bool = False
    pass_context: bool = False

    def to_openai(self) -> dict:
        """Convert to OpenAI function-calling format.

        Returns:
            Dict with "type": "function" and nested "function" object.
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict:
        """Convert to Anthropic tool-use format.

        Returns:
            Dict with "name", "description", and "input_schema".
        """
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }
