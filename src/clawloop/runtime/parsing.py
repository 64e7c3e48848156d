"""Turn provider responses into an answer text plus tool-call requests.

Native tool calls come from the provider adapter.  Providers without
native support are asked to emit ``<tool_call>{json}</tool_call>`` tags
inside their text; those tags are extracted here and stripped from the
visible answer.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Collection
from dataclasses import dataclass

from clawloop.models.schemas import ProviderResponse
from clawloop.models.schemas import ToolCall

logger = logging.getLogger(__name__)

_TOOL_TAG_RE = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)


@dataclass(frozen=True)
class ParsedResponse:
    text: str
    tool_calls: list[ToolCall]

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


def extract_tagged_calls(text: str) -> tuple[str, list[ToolCall]]:
    """Pull ``<tool_call>`` blocks out of *text*.

    Blocks that are not a JSON object with a string ``name`` are dropped
    with a warning; the remaining text is returned stripped.
    """
    calls: list[ToolCall] = []
    for raw in _TOOL_TAG_RE.findall(text):
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("ignoring malformed tool_call block: %.80s", raw)
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
            logger.warning("ignoring tool_call block without a name: %.80s", raw)
            continue
        arguments = payload.get("arguments") or {}
        if not isinstance(arguments, dict):
            logger.warning("ignoring non-object arguments for tool %s", payload["name"])
            arguments = {}
        call_id = payload.get("id")
        calls.append(
            ToolCall(
                id=call_id if isinstance(call_id, str) else None,
                name=payload["name"],
                arguments=arguments,
            )
        )
    return _TOOL_TAG_RE.sub("", text).strip(), calls


def parse_response(
    response: ProviderResponse,
    *,
    turn_id: str,
    iteration: int,
    taken: Collection[str] = (),
) -> ParsedResponse:
    """Normalize *response*; every returned call has a unique id.

    Ids that are missing, repeated within the response, or already in
    *taken* (calls from earlier iterations of the turn) become
    ``{turn_id}:{iteration}:{index}``, so replays of the same response
    produce the same ids.
    """
    text, tagged = extract_tagged_calls(response.text)
    calls: list[ToolCall] = []
    seen: set[str] = set(taken)
    for index, call in enumerate([*response.tool_calls, *tagged]):
        call_id = call.id
        if not call_id or call_id in seen:
            call_id = f"{turn_id}:{iteration}:{index}"
        seen.add(call_id)
        calls.append(call.model_copy(update={"id": call_id}))
    return ParsedResponse(text=text, tool_calls=calls)
