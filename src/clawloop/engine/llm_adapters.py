"""Provider capability and concrete model adapters."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from collections.abc import Sequence
from email.utils import parsedate_to_datetime
from time import time
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from clawloop.errors import ProviderError
from clawloop.errors import ProviderErrorKind
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import ProviderResponse
from clawloop.models.schemas import ToolCall

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """Capability every model backend implements.

    Implementations raise ``ProviderError`` with the matching kind; the
    gateway owns retries, timeouts and failover.
    """

    async def complete(
        self,
        prompt: Sequence[ChatMessage],
        tool_schema: Sequence[dict[str, Any]],
        *,
        timeout_seconds: float,
    ) -> ProviderResponse: ...


class NoopProvider:
    """Deterministic provider that always answers with a fixed reply."""

    def __init__(self, reply: str = "") -> None:
        self._reply = reply

    async def complete(
        self,
        prompt: Sequence[ChatMessage],
        tool_schema: Sequence[dict[str, Any]],
        *,
        timeout_seconds: float,
    ) -> ProviderResponse:
        del prompt, tool_schema, timeout_seconds
        return ProviderResponse(text=self._reply, model="noop")


class OpenAICompatibleProvider:
    """OpenAI-compatible chat-completions adapter with native tool calls."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def complete(
        self,
        prompt: Sequence[ChatMessage],
        tool_schema: Sequence[dict[str, Any]],
        *,
        timeout_seconds: float,
    ) -> ProviderResponse:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [_message_payload(m) for m in prompt],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if tool_schema:
            payload["tools"] = list(tool_schema)
        raw = await asyncio.to_thread(self._post, payload, timeout_seconds)
        return self._parse(raw)

    def _post(self, payload: dict[str, Any], timeout_seconds: float) -> str:
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                return response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:200]
            raise classify_http_error(
                exc.code, detail, retry_after=exc.headers.get("Retry-After") if exc.headers else None
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderError(ProviderErrorKind.TRANSIENT, "provider request timed out") from exc
        except URLError as exc:
            raise ProviderError(
                ProviderErrorKind.TRANSIENT, f"provider network error: {exc.reason}"
            ) from exc
        except OSError as exc:
            raise ProviderError(ProviderErrorKind.TRANSIENT, f"provider IO error: {exc}") from exc

    def _parse(self, raw: str) -> ProviderResponse:
        try:
            data = json.loads(raw)
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(
                ProviderErrorKind.FATAL, "provider response missing choices[0].message"
            ) from exc

        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ProviderError(ProviderErrorKind.FATAL, "provider response content must be a string")

        calls: list[ToolCall] = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            name = function.get("name")
            if not name:
                continue
            calls.append(
                ToolCall(
                    id=raw_call.get("id"),
                    name=name,
                    arguments=_decode_arguments(function.get("arguments")),
                )
            )
        return ProviderResponse(text=content, tool_calls=calls, model=data.get("model", self._model))


def classify_http_error(
    status: int, detail: str = "", *, retry_after: str | None = None
) -> ProviderError:
    """Map an HTTP status to the provider error taxonomy."""
    message = f"provider HTTP {status}: {detail}" if detail else f"provider HTTP {status}"
    if status == 429:
        return ProviderError(
            ProviderErrorKind.RATE_LIMITED, message, retry_after=_parse_retry_after(retry_after)
        )
    if status in (401, 403):
        return ProviderError(ProviderErrorKind.AUTH, message)
    if status in (408, 409, 425) or status >= 500:
        return ProviderError(ProviderErrorKind.TRANSIENT, message)
    return ProviderError(ProviderErrorKind.FATAL, message)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        return max(parsedate_to_datetime(value).timestamp() - time(), 0.0)
    except (TypeError, ValueError):
        return None


def _decode_arguments(raw: object) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        decoded = json.loads(str(raw))
    except ValueError:
        logger.warning("discarding undecodable tool arguments: %.80s", raw)
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _message_payload(message: ChatMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_call_id is not None:
        payload["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in message.tool_calls
        ]
    return payload
