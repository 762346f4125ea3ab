"""
Storage backend for the memory store
Copyright 2025 Jurden Bruce
"""

from .sqlite_store import SQLiteStore, SCHEMA_VERSION

__all__ = ['SQLiteStore', 'SCHEMA_VERSION']
