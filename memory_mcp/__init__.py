"""
Persistent memory store for AI agents, served over MCP
Copyright 2025 Jurden Bruce
"""

__version__ = "1.0.0"

from .config import MemoryConfig
from .errors import (
    MemoryStoreError,
    StoreInitializationError,
    RecordDecodeError,
    ImportBatchError,
    EmbeddingError,
)
from .models import MemoryRecord
from .store import MemoryStore

__all__ = [
    "__version__",
    "MemoryConfig",
    "MemoryRecord",
    "MemoryStore",
    "MemoryStoreError",
    "StoreInitializationError",
    "RecordDecodeError",
    "ImportBatchError",
    "EmbeddingError",
]
