"""Agent toolkit: tool definitions, registry and argument validation.

Provides the ToolSpec model and the ToolRegistry that exposes tools to
the session engine as function-calling schemas.
"""

from agentloop.toolkit.models import ToolSpec
from agentloop.toolkit.registry import ToolRegistry
from agentloop.toolkit.validation import validate_arguments

__all__ = [
    "ToolSpec",
    "ToolRegistry",
    "validate_arguments",
]
