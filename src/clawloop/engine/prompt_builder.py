"""Prompt assembly for one turn iteration.

Builds a ``PromptContext`` from the system text, retrieved memory, the
tools the policy engine currently permits, and a bounded window of the
conversation history.  Pure function of its inputs, so identical inputs
give identical prompts.
"""

from __future__ import annotations

from collections.abc import Sequence

from clawloop.config import TurnConfig
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import ConversationTurn
from clawloop.models.schemas import PromptContext
from clawloop.models.schemas import RetrievalResult
from clawloop.models.schemas import ToolDescriptor
from clawloop.models.schemas import TurnRole
from clawloop.policy.engine import PolicyEngine

_ROLE_TO_CHAT = {
    TurnRole.user: "user",
    TurnRole.agent: "assistant",
    TurnRole.tool: "tool",
}


def turn_to_message(turn: ConversationTurn) -> ChatMessage:
    return ChatMessage(role=_ROLE_TO_CHAT[turn.role], content=turn.content)


def truncate_history(
    history: Sequence[ChatMessage],
    *,
    max_messages: int,
    max_chars: int,
) -> list[ChatMessage]:
    """Keep the newest messages fitting both budgets, dropping oldest first."""
    kept: list[ChatMessage] = []
    used = 0
    for message in reversed(history):
        if len(kept) >= max_messages:
            break
        size = len(message.content)
        if used + size > max_chars:
            break
        kept.append(message)
        used += size
    kept.reverse()
    # A tool reply without its requesting assistant message is unusable
    while kept and kept[0].role == "tool":
        kept.pop(0)
    return kept


class PromptAssembler:
    """Deterministic ``PromptContext`` construction."""

    def __init__(self, config: TurnConfig | None = None, policy: PolicyEngine | None = None) -> None:
        self._config = config or TurnConfig()
        self._policy = policy

    def build(
        self,
        *,
        retrieval: RetrievalResult | None,
        tools: Sequence[ToolDescriptor],
        history: Sequence[ConversationTurn],
        working: Sequence[ChatMessage],
        system_text: str | None = None,
    ) -> PromptContext:
        """Assemble the prompt.

        *history* holds earlier turns of the conversation and is truncated;
        *working* holds the current turn's messages (user input, assistant
        tool requests, tool results) and is always kept in full.
        """
        permitted = self._policy.permitted_tools(tools) if self._policy else list(tools)
        window = truncate_history(
            [turn_to_message(turn) for turn in history if turn.role is not TurnRole.tool],
            max_messages=self._config.history_max_messages,
            max_chars=self._config.history_max_chars,
        )
        return PromptContext(
            system_text=system_text if system_text is not None else self._config.system_prompt,
            memory_snippets=tuple(retrieval.snippets) if retrieval else (),
            tools=tuple(permitted),
            history=(*window, *working),
        )
