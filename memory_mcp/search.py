"""
Hybrid search over the memory store
Copyright 2025 Jurden Bruce

candidates() serves one retrieval path (recency, vector, or text with a
substring fallback). recall() merges the text and vector paths into one
pool and hands it to the ranking policy.
"""

import sqlite3
import logging
from typing import Dict, List, Optional, Sequence, Set

from .models import MemoryRecord
from .ranking import RankingPolicy, ScoredMemory
from .similarity import cosine_similarity
from .storage.sqlite_store import SQLiteStore

logger = logging.getLogger("memory-mcp.search")

MIN_WINDOW = 50
TEXT_MULTIPLIER = 4
VECTOR_MULTIPLIER = 6
RECALL_POOL_MULTIPLIER = 4
RECALL_LIST_MULTIPLIER = 10


def _check_k(k: int):
    if isinstance(k, bool) or not isinstance(k, int) or k < 1:
        raise ValueError(f"k must be a positive integer, got {k!r}")


class SearchEngine:
    def __init__(self, store: SQLiteStore, policy: Optional[RankingPolicy] = None):
        self.store = store
        self.policy = policy or RankingPolicy()

    def candidates(
        self,
        query: Optional[str],
        k: int,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[MemoryRecord]:
        """Up to k memories from a single retrieval path

        No text, vector: recent memories that carry a vector, by similarity.
        No text, no vector: most recently updated.
        Text: full-text index (substring match if the index is unavailable
        or rejects the query), re-sorted by similarity when a vector is given.
        """
        _check_k(k)
        text = (query or "").strip()
        has_vector = bool(query_vector)

        if not text:
            if has_vector:
                window = self.store.recent_with_embeddings(max(k * VECTOR_MULTIPLIER, MIN_WINDOW))
                return self._by_similarity(window, query_vector)[:k]
            return self.store.list(max(k * TEXT_MULTIPLIER, MIN_WINDOW))[:k]

        limit = k * (VECTOR_MULTIPLIER if has_vector else TEXT_MULTIPLIER)
        matches = self._text_matches(text, limit)
        if has_vector:
            return self._by_similarity(matches, query_vector)[:k]
        return matches[:k]

    def _text_matches(self, text: str, limit: int) -> List[MemoryRecord]:
        if self.store.fts_available:
            try:
                return self.store.search_fts(text, limit)
            except sqlite3.OperationalError as e:
                logger.debug(f"FTS query rejected, using substring match: {e}")
        return self.store.search_like(text, limit)

    @staticmethod
    def _by_similarity(records: List[MemoryRecord], query_vector: Sequence[float]) -> List[MemoryRecord]:
        return sorted(
            records,
            key=lambda m: cosine_similarity(query_vector, m.embedding),
            reverse=True,
        )

    def recall(
        self,
        query: Optional[str],
        k: int,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[ScoredMemory]:
        """Ranked top k from the merged text and vector candidate pools

        Every returned memory has its usage bookkeeping advanced; a failure
        there is logged and does not affect the result.
        """
        _check_k(k)
        text = (query or "").strip()
        has_query = bool(text)
        has_vector = bool(query_vector)
        pool_size = max(k * RECALL_POOL_MULTIPLIER, MIN_WINDOW)

        pool: Dict[str, MemoryRecord] = {}
        text_matches: Set[str] = set()

        if has_query:
            for record in self._text_matches(text, pool_size * TEXT_MULTIPLIER):
                pool.setdefault(record.id, record)
                text_matches.add(record.id)

        if has_vector:
            for record in self.candidates(None, pool_size, query_vector):
                pool.setdefault(record.id, record)

        if not has_query and not has_vector:
            for record in self.store.list(max(MIN_WINDOW, k * RECALL_LIST_MULTIPLIER)):
                pool.setdefault(record.id, record)

        ranked = self.policy.rank(
            list(pool.values()), k, has_query, text_matches, query_vector
        )

        try:
            self.store.mark_used([s.record.id for s in ranked])
        except Exception as e:
            logger.warning(f"Failed to record usage for recalled memories: {e}")

        return ranked
