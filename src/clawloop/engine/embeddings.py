"""Optional embedding backend for semantic scoring."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from clawloop.config import EmbeddingConfig

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when an embedding backend cannot produce vectors."""


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


class OpenAICompatibleEmbedder:
    """Embeddings via an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 15.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        raw = await asyncio.to_thread(self._post, list(texts))
        try:
            data = json.loads(raw)["data"]
            ordered = sorted(data, key=lambda item: item.get("index", 0))
            vectors = [[float(x) for x in item["embedding"]] for item in ordered]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(f"malformed embeddings response: {exc}") from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"expected {len(texts)} embeddings, received {len(vectors)}"
            )
        return vectors

    def _post(self, texts: list[str]) -> str:
        body = json.dumps({"model": self._model, "input": texts}).encode("utf-8")
        request = Request(
            f"{self._base_url}/embeddings",
            data=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                return response.read().decode("utf-8")
        except HTTPError as exc:
            raise EmbeddingError(f"embeddings request failed with HTTP {exc.code}") from exc
        except (URLError, OSError) as exc:
            raise EmbeddingError(f"embeddings request failed: {exc}") from exc


def build_embedder(config: EmbeddingConfig) -> Embedder | None:
    """Create the configured embedder, or ``None`` for lexical-only search."""
    provider = config.provider.strip().lower()
    if provider == "none":
        return None
    if provider == "openai":
        if not config.api_key:
            raise ValueError("embedding provider 'openai' requires an api_key")
        return OpenAICompatibleEmbedder(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
        )
    raise ValueError(
        f"Unsupported embedding provider '{config.provider}'. Supported: none, openai."
    )
