"""
Async memory store facade
Copyright 2025 Jurden Bruce

Wraps the synchronous SQLiteStore so no call blocks the event loop, and
derives embeddings from the optional provider before writes.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import MemoryConfig, DEFAULT_LIST_LIMIT, MAX_IMPORT_ITEMS
from .embeddings import (
    EmbeddingProvider,
    memory_embedding_text,
    try_embed_document,
    try_embed_query,
)
from .errors import ImportBatchError
from .models import MemoryRecord
from .ranking import RankingPolicy, ScoredMemory
from .search import SearchEngine
from .similarity import sanitize_embedding
from .storage import SQLiteStore, SCHEMA_VERSION

logger = logging.getLogger("memory-mcp.store")


class MemoryStore:
    def __init__(
        self,
        config: MemoryConfig,
        embedding_provider: Optional[EmbeddingProvider] = None,
        ranking_policy: Optional[RankingPolicy] = None,
    ):
        self.config = config
        self.embedding_provider = embedding_provider
        self.sqlite_store = SQLiteStore(
            config.db_path,
            fts_enabled=config.fts_enabled,
            content_max_length=config.content_max_length,
        )
        self.search_engine = SearchEngine(self.sqlite_store, ranking_policy)

    @property
    def fts_available(self) -> bool:
        return self.sqlite_store.fts_available

    async def initialize(self):
        """Create or migrate the schema

        Raises:
            StoreInitializationError: the base schema could not be created
        """
        start = time.perf_counter()
        await asyncio.to_thread(self.sqlite_store.initialize)
        logger.info(f"[TIMING] MemoryStore initialized in {(time.perf_counter() - start)*1000:.2f}ms")

    async def _derive_embedding(self, subject: Any, content: Any) -> Optional[List[float]]:
        if self.embedding_provider is None or not isinstance(subject, str) or not isinstance(content, str):
            return None
        return await try_embed_document(self.embedding_provider, memory_embedding_text(subject, content))

    async def insert(
        self,
        subject: str,
        content: str,
        ttl_days: Optional[float] = None,
        embedding: Optional[Sequence[float]] = None,
        importance: Optional[float] = None,
        tags: Optional[List[str]] = None,
    ) -> str:
        """Store a new memory, embedding it when no vector is supplied"""
        vector = sanitize_embedding(embedding)
        if vector is None:
            vector = await self._derive_embedding(subject, content)
        return await asyncio.to_thread(
            self.sqlite_store.insert,
            subject,
            content,
            ttl_days=ttl_days,
            embedding=vector,
            importance=importance,
            tags=tags,
        )

    async def update(self, memory_id: str, patch: Mapping[str, Any]) -> bool:
        """Partial update; re-embeds when subject or content change

        If the provider is absent or fails, the stored vector is kept.
        """
        patch = dict(patch)
        if not patch:
            return False

        text_changed = "subject" in patch or "content" in patch
        if text_changed and "embedding" not in patch and self.embedding_provider is not None:
            existing = await self.get(memory_id)
            if existing is None:
                return False
            vector = await self._derive_embedding(
                patch.get("subject", existing.subject),
                patch.get("content", existing.content),
            )
            if vector is not None:
                patch["embedding"] = vector

        return await asyncio.to_thread(self.sqlite_store.update, memory_id, patch)

    async def delete(self, memory_id: str) -> bool:
        return await asyncio.to_thread(self.sqlite_store.delete, memory_id)

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        return await asyncio.to_thread(self.sqlite_store.get, memory_id)

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[MemoryRecord]:
        return await asyncio.to_thread(self.sqlite_store.list, limit)

    async def export_all(self) -> List[MemoryRecord]:
        return await asyncio.to_thread(self.sqlite_store.export_all)

    async def import_all(self, items: Sequence[Mapping[str, Any]]) -> List[str]:
        """Import a batch atomically, embedding items that carry no vector

        Raises:
            ImportBatchError: more than MAX_IMPORT_ITEMS items
        """
        if len(items) > MAX_IMPORT_ITEMS:
            raise ImportBatchError(f"Too many items: {len(items)} (max {MAX_IMPORT_ITEMS})")

        prepared: List[Dict[str, Any]] = []
        for item in items:
            entry = dict(item)
            vector = sanitize_embedding(entry.get("embedding"))
            if vector is None:
                vector = await self._derive_embedding(entry.get("subject"), entry.get("content"))
            entry["embedding"] = vector
            prepared.append(entry)

        return await asyncio.to_thread(self.sqlite_store.import_all, prepared)

    async def cleanup_expired(self) -> int:
        return await asyncio.to_thread(self.sqlite_store.cleanup_expired)

    async def search(
        self,
        query: Optional[str],
        k: int,
        embedding: Optional[Sequence[float]] = None,
    ) -> List[MemoryRecord]:
        """Single-path candidate search (see SearchEngine.candidates)"""
        return await asyncio.to_thread(
            self.search_engine.candidates, query, k, sanitize_embedding(embedding)
        )

    async def recall(
        self,
        query: Optional[str] = None,
        k: Optional[int] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> List[ScoredMemory]:
        """Ranked hybrid retrieval

        Uses the supplied vector when there is one, otherwise asks the
        provider to embed the query text.
        """
        text = (query or "").strip()
        query_vector = sanitize_embedding(embedding)
        if query_vector is None and text:
            query_vector = await try_embed_query(self.embedding_provider, text)
        return await asyncio.to_thread(
            self.search_engine.recall, text, self.config.default_top_k if k is None else k, query_vector
        )

    async def stats(self) -> Dict[str, Any]:
        return {
            "memories": await asyncio.to_thread(self.sqlite_store.count),
            "fts": self.fts_available,
            "embeddings": self.embedding_provider is not None,
            "schema_version": SCHEMA_VERSION,
            "db_path": self.sqlite_store.db_path,
        }

    async def shutdown(self):
        """Gracefully shutdown the memory store"""
        logger.info("Shutting down MemoryStore...")
        await asyncio.to_thread(self.sqlite_store.close)
