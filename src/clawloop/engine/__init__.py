"""Engine domain: providers, retrieval, prompting and memory hygiene."""

from clawloop.engine.circuit import CircuitBreaker
from clawloop.engine.circuit import HealthStore
from clawloop.engine.circuit import InMemoryHealthStore
from clawloop.engine.circuit import RedisHealthStore
from clawloop.engine.embeddings import build_embedder
from clawloop.engine.embeddings import Embedder
from clawloop.engine.embeddings import EmbeddingError
from clawloop.engine.embeddings import OpenAICompatibleEmbedder
from clawloop.engine.gateway import CompletionOptions
from clawloop.engine.gateway import ProviderGateway
from clawloop.engine.hygiene import HygieneReport
from clawloop.engine.hygiene import HygieneScheduler
from clawloop.engine.llm_adapters import classify_http_error
from clawloop.engine.llm_adapters import NoopProvider
from clawloop.engine.llm_adapters import OpenAICompatibleProvider
from clawloop.engine.llm_adapters import Provider
from clawloop.engine.prompt_builder import PromptAssembler
from clawloop.engine.retrieval import HybridRetriever

__all__ = [
    "CircuitBreaker",
    "CompletionOptions",
    "Embedder",
    "EmbeddingError",
    "HealthStore",
    "HybridRetriever",
    "HygieneReport",
    "HygieneScheduler",
    "InMemoryHealthStore",
    "NoopProvider",
    "OpenAICompatibleEmbedder",
    "OpenAICompatibleProvider",
    "PromptAssembler",
    "Provider",
    "ProviderGateway",
    "RedisHealthStore",
    "build_embedder",
    "classify_http_error",
]
