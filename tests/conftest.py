"""Pytest configuration and shared fixtures."""

import hashlib
import re
from typing import List

import pytest

from memory_mcp.config import MemoryConfig
from memory_mcp.storage import SQLiteStore
from memory_mcp.store import MemoryStore

FAKE_DIMENSIONS = 32


def _bucket(word: str) -> int:
    return int(hashlib.md5(word.encode()).hexdigest(), 16) % FAKE_DIMENSIONS


class FakeEmbeddingProvider:
    """Deterministic bag-of-words vectors; shared words mean similar vectors."""

    def __init__(self):
        self.documents: List[str] = []
        self.queries: List[str] = []

    @staticmethod
    def vector(text: str) -> List[float]:
        values = [0.0] * FAKE_DIMENSIONS
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            values[_bucket(word)] += 1.0
        return values

    async def embed_document(self, text: str) -> List[float]:
        self.documents.append(text)
        return self.vector(text)

    async def embed_query(self, text: str) -> List[float]:
        self.queries.append(text)
        return self.vector(text)


class FailingEmbeddingProvider:
    """Provider whose every call fails."""

    def __init__(self):
        self.calls = 0

    async def embed_document(self, text: str) -> List[float]:
        self.calls += 1
        raise RuntimeError("embedding service down")

    async def embed_query(self, text: str) -> List[float]:
        self.calls += 1
        raise RuntimeError("embedding service down")


@pytest.fixture
def db_path(tmp_path) -> str:
    """Path to a fresh database file."""
    return str(tmp_path / "memory.db")


@pytest.fixture
def config(db_path) -> MemoryConfig:
    """Configuration with embeddings switched off."""
    return MemoryConfig(db_path=db_path, embedding_provider="none")


@pytest.fixture
def sqlite_store(db_path):
    """Initialized synchronous record store."""
    store = SQLiteStore(db_path)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def failing_provider() -> FailingEmbeddingProvider:
    return FailingEmbeddingProvider()


@pytest.fixture
async def memory_store(config):
    """Async store without an embedding provider."""
    store = MemoryStore(config)
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture
async def embedded_store(config, fake_provider):
    """Async store backed by the deterministic fake provider."""
    store = MemoryStore(config, fake_provider)
    await store.initialize()
    yield store
    await store.shutdown()
