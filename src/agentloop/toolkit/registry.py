"""ToolRegistry: name-indexed collection of ToolSpecs.

Implements the ToolLookup capability consumed by the dispatcher and
exports provider tool schemas for the session engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agentloop.exceptions import ConfigError
from agentloop.toolkit.models import ToolSpec

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of tools available to a session.

    Usage::

        registry = ToolRegistry()

        @registry.tool(description="List files in a directory",
                       parameters={"type": "object",
                                   "properties": {"path": {"type": "string"}},
                                   "required": ["path"]},
                       parallel_safe=True)
        def list_files(path: str) -> str:
            ...
    """

    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for spec in tools:
            self.register(spec)

    def register(self, spec: ToolSpec, *, replace: bool = False) -> ToolSpec:
        """Add a tool.

        Raises:
            ConfigError: If a tool with the same name exists and
                ``replace`` is False.
        """
        if not spec.name:
            raise ConfigError("Tool name must not be empty")
        if spec.name in self._tools and not replace:
            raise ConfigError(f"Tool {spec.name!r} is already registered")
        self._tools[spec.name] = spec
        logger.debug("Registered tool %s (parallel_safe=%s)", spec.name, spec.parallel_safe)
        return spec

    def tool(
        self,
        name: str | None = None,
        *,
        description: str | None = None,
        parameters: dict | None = None,
        parallel_safe: bool = False,
        pass_context: bool = False,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``.

        The tool name defaults to the function name and the description
        to the first line of its docstring.
        """

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            doc = (fn.__doc__ or "").strip().split("\n", 1)[0]
            spec = ToolSpec(
                name=name or fn.__name__,
                description=description if description is not None else doc,
                parameters=parameters or {"type": "object", "properties": {}},
                execute=fn,
                parallel_safe=parallel_safe,
                pass_context=pass_context,
            )
            self.register(spec)
            return fn

        return decorator

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def lookup(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def to_openai(self) -> list[dict]:
        """All tools in OpenAI function-calling format."""
        return [spec.to_openai() for spec in self._tools.values()]

    def to_anthropic(self) -> list[dict]:
        """All tools in Anthropic tool-use format."""
        return [spec.to_anthropic() for spec in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
