"""
Embedding providers for the memory store
Copyright 2025 Jurden Bruce

The store treats a provider as optional: every call goes through
try_embed_document / try_embed_query, which turn any failure into
"no vector" so inserts, updates and searches never fail on embeddings.
"""

import asyncio
import hashlib
import importlib.util
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import MemoryConfig
from .errors import EmbeddingError
from .similarity import sanitize_embedding

logger = logging.getLogger("memory-mcp.embeddings")

# Check availability without importing the heavy library
EMBEDDINGS_AVAILABLE = importlib.util.find_spec("sentence_transformers") is not None

DEFAULT_SENTENCE_MODEL = "all-mpnet-base-v2"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"


class EmbeddingProvider(Protocol):
    async def embed_document(self, text: str) -> List[float]:
        ...

    async def embed_query(self, text: str) -> List[float]:
        ...


class EmbeddingCache:
    """Bounded LRU of vectors keyed by a hash of the embedded text"""

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._entries: "OrderedDict[str, List[float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(kind: str, text: str) -> str:
        return hashlib.md5(f"{kind}\x00{text}".encode()).hexdigest()

    def get(self, kind: str, text: str) -> Optional[List[float]]:
        key = self._key(kind, text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return vector

    def put(self, kind: str, text: str, vector: List[float]):
        if self.maxsize <= 0:
            return
        key = self._key(kind, text)
        with self._lock:
            self._entries[key] = vector
            self._entries.move_to_end(key)
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


class SentenceTransformerProvider:
    """Local embeddings with sentence-transformers, loaded on first use"""

    def __init__(self, model_name: str = DEFAULT_SENTENCE_MODEL, cache_size: int = 1000, device: str = "cpu"):
        if not EMBEDDINGS_AVAILABLE:
            raise EmbeddingError("sentence-transformers is not installed")
        self.model_name = model_name
        self.device = device
        self.cache = EmbeddingCache(cache_size)
        self._encoder = None
        self._load_lock = threading.Lock()

    def _ensure_encoder(self):
        if self._encoder is not None:
            return
        with self._load_lock:
            if self._encoder is not None:
                return
            # Import only when actually needed
            from sentence_transformers import SentenceTransformer

            start = time.perf_counter()
            self._encoder = SentenceTransformer(self.model_name, device=self.device)
            logger.info(f"[LAZY] Encoder {self.model_name} loaded in {(time.perf_counter() - start)*1000:.2f}ms")

    def _encode(self, kind: str, text: str) -> List[float]:
        cached = self.cache.get(kind, text)
        if cached is not None:
            return cached
        self._ensure_encoder()
        vector = self._encoder.encode(text).tolist()
        self.cache.put(kind, text, vector)
        return vector

    async def embed_document(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._encode, "document", text)

    async def embed_query(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._encode, "query", text)


class OpenAIEmbeddingProvider:
    """Embeddings from an OpenAI-compatible /embeddings endpoint"""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        cache_size: int = 1000,
    ):
        """
        Args:
            api_key: Bearer token for the endpoint
            model: Embedding model name
            base_url: API root, without the trailing /embeddings
            timeout: Request timeout in seconds
            cache_size: Number of vectors kept in the LRU cache
        """
        if not api_key:
            raise EmbeddingError("Missing embedding API key. Set MEMORY_EMBEDDING_KEY.")
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache = EmbeddingCache(cache_size)

    async def _embed(self, kind: str, text: str) -> List[float]:
        cached = self.cache.get(kind, text)
        if cached is not None:
            return cached

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self.model, "input": text},
            )
            response.raise_for_status()
            vector = extract_vector(response.json(), kind)

        self.cache.put(kind, text, vector)
        return vector

    async def embed_document(self, text: str) -> List[float]:
        return await self._embed("document", text)

    async def embed_query(self, text: str) -> List[float]:
        return await self._embed("query", text)


def extract_vector(payload: Dict[str, Any], context: str) -> List[float]:
    """Pull data[0].embedding out of an embeddings API response"""
    try:
        vector = payload["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError):
        vector = None
    if not isinstance(vector, list) or not vector:
        raise EmbeddingError(f"No embedding returned for {context}")
    return vector


def create_embedding_provider(config: MemoryConfig) -> Optional[EmbeddingProvider]:
    """Build the configured provider, or None when embeddings are off or unavailable"""
    choice = config.embedding_provider
    if choice == "none":
        logger.info("Embedding provider disabled by configuration")
        return None

    try:
        if choice == "openai" or (choice == "auto" and config.embedding_api_key):
            return OpenAIEmbeddingProvider(
                api_key=config.embedding_api_key,
                model=config.embedding_model or DEFAULT_OPENAI_MODEL,
                base_url=config.embedding_base_url,
                cache_size=config.embedding_cache_size,
            )
        if choice == "sentence-transformers" or (choice == "auto" and EMBEDDINGS_AVAILABLE):
            return SentenceTransformerProvider(
                model_name=config.embedding_model or DEFAULT_SENTENCE_MODEL,
                cache_size=config.embedding_cache_size,
            )
    except EmbeddingError as e:
        logger.info(f"Embedding provider disabled: {e}")
        return None

    logger.info("No embedding provider available - ranking by text and recency only")
    return None


async def try_embed_document(provider: Optional[EmbeddingProvider], text: str) -> Optional[List[float]]:
    if provider is None:
        return None
    try:
        return sanitize_embedding(await provider.embed_document(text))
    except Exception as e:
        logger.warning(f"Embedding document failed: {e}")
        return None


async def try_embed_query(provider: Optional[EmbeddingProvider], text: str) -> Optional[List[float]]:
    if provider is None:
        return None
    try:
        return sanitize_embedding(await provider.embed_query(text))
    except Exception as e:
        logger.warning(f"Embedding query failed: {e}")
        return None


def memory_embedding_text(subject: str, content: str) -> str:
    """Text a memory is embedded from"""
    return f"{subject}\n\n{content}".strip()
