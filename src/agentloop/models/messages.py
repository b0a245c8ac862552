"""Conversation message model.

Messages are frozen pydantic models made of an ordered tuple of content
blocks (a discriminated union on ``type``). A message is immutable once
appended to history; its ``token_cost`` is filled in exactly once, at
append time, by the session.

ToolCall is a plain frozen dataclass: it is created by the streaming
parser, handed to the dispatcher exactly once, and recorded in history
as a ``ToolCallBlock``.
"""

from __future__ import annotations

import enum
import json as _json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from agentloop.models.results import TaskResult


class Role(str, enum.Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MessageKind(str, enum.Enum):
    """How a message came to be in history.

    - ``NORMAL``: produced by the conversation itself.
    - ``SUMMARY``: synthesized by compaction in place of a range.
    - ``DEHYDRATED``: content truncated by aggressive dehydration.
    - ``CORRECTIVE``: engine-authored nudge (malformed tool call,
      continuation prompt).
    """

    NORMAL = "normal"
    SUMMARY = "summary"
    DEHYDRATED = "dehydrated"
    CORRECTIVE = "corrective"


# ---------------------------------------------------------------------------
# ToolCall
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    Attributes:
        id: Unique call identifier used to correlate the result.
        name: Registered tool name.
        arguments: Parsed argument payload.
        sequential: True when the model asked for this call to run only
            after every earlier call in the same turn has finished.
    """

    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    sequential: bool = False

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ToolCall:
        """Reconstruct from a stored dict."""
        return cls(
            id=d["id"],
            name=d["name"],
            arguments=dict(d.get("arguments") or {}),
            sequential=bool(d.get("sequential", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "sequential": self.sequential,
        }

    def to_openai(self) -> dict[str, Any]:
        """Serialize to OpenAI wire format (arguments as a JSON string)."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": _json.dumps(self.arguments),
            },
        }

    def signature(self) -> tuple[str, str]:
        """Name plus canonical arguments, used for duplicate detection."""
        return self.name, _json.dumps(self.arguments, sort_keys=True, default=str)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    """Plain narration."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallBlock(BaseModel):
    """A tool call recorded in an assistant message."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    arguments: dict = Field(default_factory=dict)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.call_id, name=self.name, arguments=dict(self.arguments))


class ToolResultBlock(BaseModel):
    """The outcome of one tool call, correlated by ``call_id``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    tool_name: str
    success: bool
    output: Union[str, dict, list] = ""

    @property
    def output_text(self) -> str:
        if isinstance(self.output, str):
            return self.output
        return _json.dumps(self.output, default=str)


ContentBlock = Annotated[
    Union[TextBlock, ToolCallBlock, ToolResultBlock],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One entry of conversation history."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: tuple[ContentBlock, ...] = ()
    kind: MessageKind = MessageKind.NORMAL
    turn: int = 0
    pinned: bool = False
    token_cost: int = 0

    # -- constructors --------------------------------------------------

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, content=(TextBlock(text=text),), pinned=True)

    @classmethod
    def user(
        cls,
        text: str,
        *,
        kind: MessageKind = MessageKind.NORMAL,
        pinned: bool = False,
    ) -> Message:
        return cls(role=Role.USER, content=(TextBlock(text=text),), kind=kind, pinned=pinned)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()) -> Message:
        blocks: list[TextBlock | ToolCallBlock] = []
        if text:
            blocks.append(TextBlock(text=text))
        for call in tool_calls:
            blocks.append(ToolCallBlock(call_id=call.id, name=call.name, arguments=call.arguments))
        return cls(role=Role.ASSISTANT, content=tuple(blocks))

    @classmethod
    def tool_result(cls, result: TaskResult) -> Message:
        block = ToolResultBlock(
            call_id=result.call_id,
            tool_name=result.tool_name,
            success=result.success,
            output=result.output,
        )
        return cls(role=Role.TOOL, content=(block,))

    # -- accessors -----------------------------------------------------

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [b.to_tool_call() for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def call_ids(self) -> set[str]:
        """Call ids this message opens (assistant) or answers (tool)."""
        ids: set[str] = set()
        for block in self.content:
            if isinstance(block, (ToolCallBlock, ToolResultBlock)):
                ids.add(block.call_id)
        return ids

    def render_text(self) -> str:
        """Flatten every block to text (used for estimation and summaries)."""
        parts: list[str] = []
        for block in self.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolCallBlock):
                parts.append(f"[tool call {block.name}] {_json.dumps(block.arguments, default=str)}")
            else:
                status = "ok" if block.success else "failed"
                parts.append(f"[tool result {block.tool_name} ({status})] {block.output_text}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """OpenAI-style chat message dict(s) flattened into one mapping.

        Tool messages carry ``tool_call_id``; assistant messages carry
        ``tool_calls`` when present.
        """
        if self.role == Role.TOOL:
            results = self.tool_results
            return {
                "role": "tool",
                "tool_call_id": results[0].call_id if results else "",
                "content": "\n".join(r.output_text for r in results),
            }
        d: dict[str, Any] = {"role": self.role.value, "content": self.text}
        calls = self.tool_calls
        if calls:
            d["tool_calls"] = [c.to_openai() for c in calls]
        return d

    def with_cost(self, token_cost: int) -> Message:
        return self.model_copy(update={"token_cost": token_cost})
