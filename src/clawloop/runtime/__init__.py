"""Runtime domain: turn orchestration and component wiring."""

from clawloop.runtime.agent import AgentRuntime
from clawloop.runtime.agent import build_runtime
from clawloop.runtime.agent import Channel
from clawloop.runtime.controller import ChannelInput
from clawloop.runtime.controller import PendingConfirmation
from clawloop.runtime.controller import TurnController
from clawloop.runtime.controller import TurnOutcome
from clawloop.runtime.controller import TurnState
from clawloop.runtime.parsing import parse_response
from clawloop.runtime.registry import default_provider_registry
from clawloop.runtime.registry import Registry

__all__ = [
    "AgentRuntime",
    "Channel",
    "ChannelInput",
    "PendingConfirmation",
    "Registry",
    "TurnController",
    "TurnOutcome",
    "TurnState",
    "build_runtime",
    "default_provider_registry",
    "parse_response",
]
