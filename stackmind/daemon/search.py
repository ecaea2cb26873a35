"""Semantic search over stored records, with keyword fallback.

Flow:
1. Blank query -> every record in store order, unranked
2. Embed the query (may wait on first-use model load)
3. Use each record's cached vector, or derive and cache one
4. Score with cosine similarity; records whose vector length disagrees
   with the query's are left out rather than failing the query
5. Sort by score, newest first on ties, keep top_k

search() wraps this and falls back to substring search on any
capability failure, so callers always get results.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from loguru import logger

from .errors import CapabilityUnavailable, DimensionMismatch, NotFound, PersistenceFailure
from .models import Record
from .providers import EmbeddingProvider
from .similarity import cosine_similarity
from .store import RecordStore


@dataclass
class ScoredRecord:
    record: Record
    score: float


@dataclass
class SearchOutcome:
    """Records returned for a query and how they were found."""
    query: str
    records: List[Record]
    mode: str  # semantic | keyword | all
    scores: List[float] = field(default_factory=list)
    latency_ms: float = 0.0
    error: Optional[str] = None


class SemanticSearchEngine:
    """Ranks stored records by similarity to a free-text query."""

    def __init__(self, store: RecordStore, embedder: EmbeddingProvider,
                 default_top_k: int = 10, cache_vectors: bool = True):
        self.store = store
        self.embedder = embedder
        self.default_top_k = default_top_k
        self.cache_vectors = cache_vectors
        self.stats = {"semantic": 0, "fallbacks": 0, "vectors_derived": 0, "unscoreable": 0}

    async def rank(self, query: str, top_k: Optional[int] = None) -> List[ScoredRecord]:
        """
        Score records against query.

        Raises:
            CapabilityUnavailable: If the query cannot be embedded
        """
        top_k = self.default_top_k if top_k is None else top_k
        if top_k <= 0:
            return []

        query_vector = await self.embedder.embed(query)
        scored: List[Tuple[float, int, Record]] = []

        for record in await self.store.list():
            vector = await self._vector_for(record)
            if vector is None:
                continue
            try:
                score = cosine_similarity(query_vector, vector)
            except DimensionMismatch:
                logger.debug(
                    f"Record {record.id} has a {len(vector)}-dim vector, "
                    f"query has {len(query_vector)}; not scored"
                )
                self.stats["unscoreable"] += 1
                continue
            scored.append((score, record.timestamp, record))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [ScoredRecord(record=r, score=s) for s, _, r in scored[:top_k]]

    async def semantic_search(self, query: str, top_k: Optional[int] = None) -> List[Record]:
        """Top records by similarity; blank query returns all records unranked."""
        if not (query or "").strip():
            return await self.store.list()
        return [item.record for item in await self.rank(query, top_k)]

    async def search(self, query: str, top_k: Optional[int] = None) -> SearchOutcome:
        """Semantic search that degrades to keyword search instead of failing."""
        start = time.perf_counter()
        if not (query or "").strip():
            records = await self.store.list()
            return SearchOutcome(query=query or "", records=records, mode="all",
                                 latency_ms=(time.perf_counter() - start) * 1000)

        try:
            ranked = await self.rank(query, top_k)
        except (CapabilityUnavailable, DimensionMismatch) as e:
            logger.warning(f"Semantic search unavailable, falling back to keyword search: {e}")
            self.stats["fallbacks"] += 1
            records = await self.store.search(query)
            return SearchOutcome(
                query=query,
                records=records,
                mode="keyword",
                latency_ms=(time.perf_counter() - start) * 1000,
                error=str(e),
            )

        self.stats["semantic"] += 1
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Semantic search '{query[:40]}' ranked {len(ranked)} records in {elapsed_ms:.1f}ms")
        return SearchOutcome(
            query=query,
            records=[item.record for item in ranked],
            mode="semantic",
            scores=[item.score for item in ranked],
            latency_ms=elapsed_ms,
        )

    async def _vector_for(self, record: Record) -> Optional[List[float]]:
        if record.embedding:
            return record.embedding

        vector = await self.embedder.embed(record.embedding_text())
        self.stats["vectors_derived"] += 1
        if self.cache_vectors:
            try:
                await self.store.set_embedding(record.id, vector)
            except (NotFound, PersistenceFailure) as e:
                # Ranking still uses the derived vector
                logger.debug(f"Could not cache vector for {record.id}: {e}")
        return vector
