"""Hybrid memory retrieval: BM25 lexical + embedding cosine, near-dup collapse.

Scoring is a weighted sum of two sub-scores in [0, 1]:

* lexical: BM25 over the candidate set, normalized by the top score;
* semantic: cosine of query and record embeddings, clamped to [0, 1].

Records without an embedding (or with embeddings disabled) are scored on
the lexical signal alone.  Near-duplicates are collapsed greedily in rank
order, keeping the most recent member of each cluster.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from clawloop.config import RetrievalConfig
from clawloop.engine.embeddings import Embedder
from clawloop.engine.embeddings import EmbeddingError
from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter
from clawloop.memory.store import MemoryStore
from clawloop.models.schemas import RetrievalResult
from clawloop.models.schemas import ScoredRecord
from clawloop.observability import record_latency

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens of *text*, in order, with repeats."""
    return _WORD_RE.findall(text.lower())


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def term_cosine(a: Counter[str], b: Counter[str]) -> float:
    if not a or not b:
        return 0.0
    dot = sum(a[t] * b[t] for t in a.keys() & b.keys())
    na = math.sqrt(sum(v * v for v in a.values()))
    nb = math.sqrt(sum(v * v for v in b.values()))
    return dot / (na * nb)


def combine_scores(
    lexical: float,
    semantic: float | None,
    *,
    lexical_weight: float,
    semantic_weight: float,
) -> float:
    """Weighted sum with normalized weights; lexical-only when *semantic* is missing."""
    if semantic is None:
        return lexical
    total = lexical_weight + semantic_weight
    return (lexical_weight * lexical + semantic_weight * semantic) / total


def bm25_scores(
    query_terms: Sequence[str],
    documents: Sequence[Sequence[str]],
    *,
    k1: float = 1.2,
    b: float = 0.75,
) -> list[float]:
    """Okapi BM25 for each document, normalized to [0, 1] by the maximum."""
    n = len(documents)
    if n == 0:
        return []
    unique_query = set(query_terms)
    if not unique_query:
        return [0.0] * n
    avgdl = sum(len(doc) for doc in documents) / n or 1.0
    df: Counter[str] = Counter()
    for doc in documents:
        df.update(unique_query.intersection(doc))

    raw: list[float] = []
    for doc in documents:
        tf = Counter(doc)
        length_norm = k1 * (1 - b + b * len(doc) / avgdl)
        score = 0.0
        for term in unique_query:
            freq = tf.get(term, 0)
            if not freq:
                continue
            idf = math.log(1 + (n - df[term] + 0.5) / (df[term] + 0.5))
            score += idf * freq * (k1 + 1) / (freq + length_norm)
        raw.append(score)
    top = max(raw)
    if top <= 0:
        return [0.0] * n
    return [score / top for score in raw]


@dataclass
class _Cluster:
    seed: ScoredRecord
    seed_terms: Counter[str]
    members: list[ScoredRecord] = field(default_factory=list)

    @property
    def representative(self) -> ScoredRecord:
        return max(self.members, key=lambda m: (m.record.timestamp, m.record.id))


class HybridRetriever:
    """Rank live memory records for a query."""

    def __init__(
        self,
        store: MemoryStore,
        config: RetrievalConfig | None = None,
        *,
        embedder: Embedder | None = None,
    ) -> None:
        self._config = config or RetrievalConfig()
        if self._config.lexical_weight < 0 or self._config.semantic_weight < 0:
            raise ValueError("retrieval weights must be non-negative")
        if self._config.lexical_weight + self._config.semantic_weight <= 0:
            raise ValueError("at least one retrieval weight must be positive")
        self._store = store
        self._embedder = embedder

    @property
    def semantic_enabled(self) -> bool:
        return self._config.embeddings_enabled and self._embedder is not None

    async def retrieve(self, query: str, k: int) -> RetrievalResult:
        """Return up to *k* deduplicated records, best first.

        Store failures propagate as ``MemoryStoreError``; the caller decides
        whether to degrade.
        """
        start = perf_counter()
        ok = False
        try:
            if k <= 0 or not query.strip():
                ok = True
                return RetrievalResult(query=query)
            candidates = await self._store.query(
                RecordFilter(include_superseded=self._config.include_superseded)
            )
            query_embedding = await self._embed_query(query) if candidates else None
            ranked = self.rank(query, candidates, query_embedding=query_embedding)
            ok = True
            return RetrievalResult(query=query, items=self.collapse(ranked, k))
        finally:
            record_latency(
                operation="retrieval.retrieve",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _embed_query(self, query: str) -> list[float] | None:
        if not self.semantic_enabled:
            return None
        try:
            vectors = await self._embedder.embed([query])
        except EmbeddingError as exc:
            logger.warning("query embedding failed, using lexical scores only: %s", exc)
            return None
        return vectors[0] if vectors else None

    def rank(
        self,
        query: str,
        candidates: Sequence[MemoryRecord],
        *,
        query_embedding: Sequence[float] | None = None,
    ) -> list[ScoredRecord]:
        """Score and order *candidates*; records at or below ``min_score`` are dropped."""
        cfg = self._config
        documents = [tokenize(record.content) for record in candidates]
        lexical = bm25_scores(tokenize(query), documents, k1=cfg.bm25_k1, b=cfg.bm25_b)

        scored: list[ScoredRecord] = []
        for record, lex in zip(candidates, lexical):
            semantic: float | None = None
            if cfg.embeddings_enabled and query_embedding and record.embedding:
                semantic = min(max(cosine(query_embedding, record.embedding), 0.0), 1.0)
            score = combine_scores(
                lex,
                semantic,
                lexical_weight=cfg.lexical_weight,
                semantic_weight=cfg.semantic_weight,
            )
            if score <= cfg.min_score:
                continue
            scored.append(
                ScoredRecord(
                    record=record,
                    score=score,
                    lexical_score=lex,
                    semantic_score=semantic,
                )
            )
        scored.sort(key=_rank_key)
        return scored

    def collapse(self, ranked: Sequence[ScoredRecord], k: int) -> list[ScoredRecord]:
        """Greedy near-duplicate collapse over *ranked*, returning at most *k*.

        Each candidate joins the first cluster whose seed it duplicates.
        Clusters keep their seed's score and surface their most recent
        member.
        """
        clusters: list[_Cluster] = []
        for item in ranked:
            terms = Counter(tokenize(item.record.content))
            for cluster in clusters:
                if self.similarity(item.record, terms, cluster.seed.record, cluster.seed_terms) > (
                    self._config.dedup_threshold
                ):
                    cluster.members.append(item)
                    break
            else:
                if len(clusters) < k:
                    clusters.append(_Cluster(seed=item, seed_terms=terms, members=[item]))

        results = [
            cluster.representative.model_copy(update={"score": cluster.seed.score})
            for cluster in clusters
        ]
        results.sort(key=_rank_key)
        return results[:k]

    def similarity(
        self,
        a: MemoryRecord,
        a_terms: Counter[str],
        b: MemoryRecord,
        b_terms: Counter[str],
    ) -> float:
        """Term-frequency cosine, blended with embedding cosine when both exist."""
        lexical = term_cosine(a_terms, b_terms)
        if self._config.embeddings_enabled and a.embedding and b.embedding:
            return (lexical + cosine(a.embedding, b.embedding)) / 2
        return lexical


def _rank_key(item: ScoredRecord) -> tuple[float, float, str]:
    return (-item.score, -item.record.timestamp, item.record.id)
