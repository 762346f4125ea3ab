"""
Exception types for the memory store
Copyright 2025 Jurden Bruce
"""


class MemoryStoreError(Exception):
    """Base class for memory store failures"""


class StoreInitializationError(MemoryStoreError):
    """The base schema could not be created; the store is unusable"""


class RecordDecodeError(MemoryStoreError):
    """A stored row holds a value that cannot be mapped onto a MemoryRecord"""


class ImportBatchError(MemoryStoreError):
    """A bulk import batch was rejected before reaching the database"""


class EmbeddingError(MemoryStoreError):
    """An embedding provider returned no usable vector"""
