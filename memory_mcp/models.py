"""
Data models for the memory store
Copyright 2025 Jurden Bruce
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from numbers import Real
from typing import Any, Dict, List, Optional

from .errors import RecordDecodeError
from .utils import format_timestamp, parse_timestamp, parse_optional_timestamp, utc_now

logger = logging.getLogger("memory-mcp.models")

DEFAULT_IMPORTANCE = 0.5


@dataclass
class MemoryRecord:
    id: str
    subject: str
    content: str
    date_created: datetime
    date_updated: datetime
    expires_at: Optional[datetime] = None
    importance: float = DEFAULT_IMPORTANCE
    tags: List[str] = field(default_factory=list)
    # Usage bookkeeping, advanced whenever recall surfaces the record
    last_used_at: Optional[datetime] = None
    use_count: int = 0
    # Internal only: never part of to_api_dict()
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        if isinstance(self.date_created, str):
            self.date_created = parse_timestamp(self.date_created)
        if isinstance(self.date_updated, str):
            self.date_updated = parse_timestamp(self.date_updated)
        if self.expires_at and isinstance(self.expires_at, str):
            self.expires_at = parse_timestamp(self.expires_at)
        if self.last_used_at and isinstance(self.last_used_at, str):
            self.last_used_at = parse_timestamp(self.last_used_at)
        if self.tags is None:
            self.tags = []

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def last_touched(self) -> Optional[datetime]:
        """Most recent of use or mutation, used for recency ranking"""
        return self.last_used_at or self.date_updated

    def to_api_dict(self) -> Dict[str, Any]:
        """Convert to the dict handed to tool callers (no embedding)"""
        return {
            "id": self.id,
            "subject": self.subject,
            "content": self.content,
            "importance": self.importance,
            "tags": list(self.tags),
            "dateCreated": format_timestamp(self.date_created),
            "dateUpdated": format_timestamp(self.date_updated),
            "expiresAt": format_timestamp(self.expires_at) if self.expires_at else None,
            "lastUsedAt": format_timestamp(self.last_used_at) if self.last_used_at else None,
            "useCount": self.use_count,
        }

    @classmethod
    def from_row(cls, row, embedding: Optional[List[float]] = None) -> "MemoryRecord":
        """Convert a SQLite row to a MemoryRecord

        The embedding column is decoded by the storage layer and passed in
        already cleaned. Primary fields of the wrong shape raise
        RecordDecodeError; a malformed tag list degrades to no tags.

        Args:
            row: sqlite3.Row from the memories table
            embedding: decoded vector or None

        Returns:
            MemoryRecord instance
        """
        memory_id = row["id"]
        for name in ("id", "subject", "content"):
            if not isinstance(row[name], str):
                raise RecordDecodeError(
                    f"Memory {memory_id!r}: column {name} holds {type(row[name]).__name__}, expected text"
                )

        try:
            date_created = parse_timestamp(row["date_created"])
            date_updated = parse_timestamp(row["date_updated"])
            expires_at = parse_optional_timestamp(row["expires_at"])
            last_used_at = parse_optional_timestamp(row["last_used_at"])
        except (TypeError, ValueError) as e:
            raise RecordDecodeError(f"Memory {memory_id!r}: bad timestamp: {e}") from e

        importance = row["importance"]
        if importance is None:
            importance = DEFAULT_IMPORTANCE
        elif isinstance(importance, bool) or not isinstance(importance, Real):
            raise RecordDecodeError(f"Memory {memory_id!r}: importance is not a number")

        use_count = row["use_count"] or 0
        if not isinstance(use_count, int):
            raise RecordDecodeError(f"Memory {memory_id!r}: use_count is not an integer")

        return cls(
            id=memory_id,
            subject=row["subject"],
            content=row["content"],
            date_created=date_created,
            date_updated=date_updated,
            expires_at=expires_at,
            importance=float(importance),
            tags=_decode_tags(row["tags"], memory_id),
            last_used_at=last_used_at,
            use_count=use_count,
            embedding=embedding,
        )


def _decode_tags(raw: Optional[str], memory_id: str) -> List[str]:
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Memory {memory_id}: unreadable tags column, treating as empty")
        return []
    if not isinstance(tags, list):
        logger.warning(f"Memory {memory_id}: tags column is not a list, treating as empty")
        return []
    return [str(t) for t in tags]
