"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing; plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field


@dataclass(frozen=True)
class ProviderConfig:
    """One model backend, resolved through the provider registry."""

    id: str = "primary"
    kind: str = "openai"
    priority: int = 0
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 4096


@dataclass(frozen=True)
class GatewayConfig:
    """Retry, failover and circuit-breaker tuning for the provider gateway."""

    # Attempts per provider before failing over (K)
    max_attempts_per_provider: int = 2
    attempt_timeout_seconds: float = 60.0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    # Circuit breaker: N failures within W seconds opens for T seconds
    failure_threshold: int = 3
    failure_window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    cooldown_multiplier: float = 2.0
    max_cooldown_seconds: float = 600.0
    # "memory" keeps health per process, "redis" persists it across restarts
    health_backend: str = "memory"


@dataclass(frozen=True)
class RetrievalConfig:
    """Hybrid search weights and near-duplicate collapse."""

    lexical_weight: float = 0.5
    semantic_weight: float = 0.5
    embeddings_enabled: bool = True
    dedup_threshold: float = 0.95
    min_score: float = 0.0
    bm25_k1: float = 1.2
    bm25_b: float = 0.75
    include_superseded: bool = False


@dataclass(frozen=True)
class HygieneConfig:
    """Background summarization of aged memory."""

    interval_seconds: float = 3600.0
    max_age_seconds: float = 7 * 24 * 3600.0
    max_live_records: int = 5000
    group_size: int = 20
    min_group_size: int = 2
    lease_ttl_seconds: float = 300.0
    summary_max_chars: int = 2000


@dataclass(frozen=True)
class PolicyConfig:
    """Autonomy level, static allow/deny lists and rate limits."""

    autonomy_level: str = "confirm-required"
    allowed_tools: tuple[str, ...] = ()
    denied_tools: tuple[str, ...] = ()
    window_seconds: float = 3600.0
    default_rate_limit: int | None = None
    rate_limits: dict[str, int] = field(default_factory=dict)
    track_abuse: bool = True


@dataclass(frozen=True)
class ToolExecutorConfig:
    """Per-tool timeouts and decision freshness."""

    default_timeout_seconds: float = 30.0
    timeouts: dict[str, float] = field(default_factory=dict)
    timeout_retries: dict[str, int] = field(default_factory=dict)
    max_decision_age_seconds: float = 30.0


@dataclass(frozen=True)
class TurnConfig:
    """Turn controller limits and static prompt text."""

    system_prompt: str = (
        "You are a helpful assistant. Use the available tools when they help "
        "answer the user, and answer directly otherwise."
    )
    max_iterations: int = 8
    retrieval_k: int = 5
    history_max_messages: int = 20
    history_max_chars: int = 16000
    turn_timeout_seconds: float | None = 300.0


@dataclass(frozen=True)
class MemoryStoreConfig:
    """Memory store backend selection."""

    backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "clawloop"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Optional embedding provider for semantic scoring."""

    provider: str = "none"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "clawloop_audit.jsonl"
    enabled: bool = True
    # Payload keys (at any depth) whose values are masked before writing
    redact_keys: tuple[str, ...] = ("api_key", "authorization", "password", "secret", "token")


@dataclass(frozen=True)
class RuntimeConfig:
    """Aggregate configuration for one agent runtime."""

    providers: tuple[ProviderConfig, ...] = (ProviderConfig(),)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    hygiene: HygieneConfig = field(default_factory=HygieneConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    tools: ToolExecutorConfig = field(default_factory=ToolExecutorConfig)
    turn: TurnConfig = field(default_factory=TurnConfig)
    memory: MemoryStoreConfig = field(default_factory=MemoryStoreConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
