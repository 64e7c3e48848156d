"""Models domain: shared turn, tool and provider data models."""

from clawloop.models.provider import HealthState
from clawloop.models.provider import ProviderDescriptor
from clawloop.models.schemas import AutonomyLevel
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import ConversationTurn
from clawloop.models.schemas import PromptContext
from clawloop.models.schemas import ProviderResponse
from clawloop.models.schemas import RetrievalResult
from clawloop.models.schemas import ScoredRecord
from clawloop.models.schemas import ToolCall
from clawloop.models.schemas import ToolDescriptor
from clawloop.models.schemas import ToolInvocationRequest
from clawloop.models.schemas import ToolResult
from clawloop.models.schemas import TurnRole

__all__ = [
    "AutonomyLevel",
    "ChatMessage",
    "ConversationTurn",
    "HealthState",
    "PromptContext",
    "ProviderDescriptor",
    "ProviderResponse",
    "RetrievalResult",
    "ScoredRecord",
    "ToolCall",
    "ToolDescriptor",
    "ToolInvocationRequest",
    "ToolResult",
    "TurnRole",
]
