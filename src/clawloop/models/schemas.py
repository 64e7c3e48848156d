"""Pydantic models exchanged between the turn controller and its collaborators.

Everything here is frozen: turns, prompts and tool requests are created
once and then passed around by reference.
"""

from __future__ import annotations

import hashlib
import json
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from clawloop.errors import ToolErrorKind
from clawloop.memory.schemas import MemoryRecord

_FROZEN = {"frozen": True}


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TurnRole(str, Enum):
    user = "user"
    agent = "agent"
    tool = "tool"


class AutonomyLevel(str, Enum):
    """Ceiling on which side-effecting actions may run without confirmation."""

    read_only = "read-only"
    confirm_required = "confirm-required"
    full = "full"

    @property
    def rank(self) -> int:
        return _AUTONOMY_RANK[self]

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, AutonomyLevel):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, AutonomyLevel):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, AutonomyLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, AutonomyLevel):
            return NotImplemented
        return self.rank < other.rank


_AUTONOMY_RANK = {
    AutonomyLevel.read_only: 0,
    AutonomyLevel.confirm_required: 1,
    AutonomyLevel.full: 2,
}


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ConversationTurn(BaseModel):
    """One entry of a conversation log; immutable once recorded."""

    model_config = _FROZEN

    seq: int = Field(description="Monotonic sequence id within the conversation.")
    role: TurnRole
    content: str
    timestamp: float = Field(default_factory=time.time)
    provider_id: str | None = Field(
        default=None,
        description="Provider that produced an agent turn.",
    )
    tool_call_ids: list[str] = Field(
        default_factory=list,
        description="Tool calls emitted by (agent) or answered by (tool) this turn.",
    )


class ChatMessage(BaseModel):
    """A rendered prompt message, in chat-completions vocabulary."""

    model_config = _FROZEN

    role: str
    content: str
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Provider exchange
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    model_config = _FROZEN

    id: str | None = None
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ProviderResponse(BaseModel):
    model_config = _FROZEN

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    provider_id: str | None = None
    model: str | None = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolDescriptor(BaseModel):
    """What the prompt and the policy engine need to know about a tool."""

    model_config = _FROZEN

    name: str
    description: str = ""
    parameters_schema: dict[str, Any] = Field(default_factory=dict)
    read_only: bool = False
    parallel_safe: bool = False
    required_level: AutonomyLevel = AutonomyLevel.full

    def to_function_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema or {"type": "object", "properties": {}},
            },
        }


class ToolInvocationRequest(BaseModel):
    model_config = _FROZEN

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    turn_id: str
    call_id: str
    confirmed: bool = Field(
        default=False,
        description="Set when the user explicitly approved this call.",
    )

    def fingerprint(self) -> str:
        """Stable digest binding a decision to this exact request."""
        signature = {
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "turn_id": self.turn_id,
            "call_id": self.call_id,
            "confirmed": self.confirmed,
        }
        return hashlib.sha256(
            json.dumps(signature, sort_keys=True, separators=(",", ":"), default=str).encode(
                "utf-8"
            )
        ).hexdigest()


class ToolResult(BaseModel):
    model_config = _FROZEN

    call_id: str
    tool_name: str
    output: str | None = None
    error: ToolErrorKind | None = None
    error_message: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_context(self) -> str:
        """Render the result the way the model sees it."""
        if self.ok:
            return self.output or ""
        return f"[tool error: {self.error.value}] {self.error_message or ''}".strip()


# ---------------------------------------------------------------------------
# Retrieval and prompts
# ---------------------------------------------------------------------------


class ScoredRecord(BaseModel):
    model_config = _FROZEN

    record: MemoryRecord
    score: float
    lexical_score: float = 0.0
    semantic_score: float | None = None


class RetrievalResult(BaseModel):
    model_config = _FROZEN

    query: str
    items: list[ScoredRecord] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def snippets(self) -> list[str]:
        return [item.record.content for item in self.items]


class PromptContext(BaseModel):
    """Everything sent to a provider for one completion."""

    model_config = _FROZEN

    system_text: str
    memory_snippets: tuple[str, ...] = ()
    tools: tuple[ToolDescriptor, ...] = ()
    history: tuple[ChatMessage, ...] = ()

    def tool_schema(self) -> list[dict[str, Any]]:
        return [tool.to_function_schema() for tool in self.tools]

    def to_messages(self) -> list[ChatMessage]:
        sections = [self.system_text.strip()]
        if self.memory_snippets:
            lines = "\n".join(f"- {snippet}" for snippet in self.memory_snippets)
            sections.append(f"## Relevant memory\n\n{lines}")
        if self.tools:
            tool_lines = "\n".join(
                f"- {tool.name}: {tool.description}" for tool in self.tools
            )
            sections.append(
                "## Tools\n\n"
                f"{tool_lines}\n\n"
                "To call a tool, reply with "
                '<tool_call>{"name": "<tool>", "arguments": {...}}</tool_call>.'
            )
        system = ChatMessage(role="system", content="\n\n".join(sections))
        return [system, *self.history]


ChatMessage.model_rebuild()
