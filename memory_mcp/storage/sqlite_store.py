"""
SQLite persistence store for the memory system
Copyright 2025 Jurden Bruce

Owns the on-disk schema, the FTS5 shadow index and its triggers, and the
encoding of embedding vectors. Every method is synchronous and guarded by
one re-entrant lock; the async facade in memory_mcp.store calls in through
worker threads.
"""

import sqlite3
import json
import logging
import math
import threading
import uuid
from datetime import datetime, timedelta
from numbers import Real
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Union

from ..errors import StoreInitializationError
from ..models import MemoryRecord, DEFAULT_IMPORTANCE
from ..similarity import sanitize_embedding
from ..utils import register_sqlite_adapters, parse_optional_timestamp, utc_now

logger = logging.getLogger("memory-mcp.sqlite")

register_sqlite_adapters()

SCHEMA_VERSION = 2

SUBJECT_MAX_LENGTH = 160
DEFAULT_CONTENT_MAX_LENGTH = 1000
MAX_TAGS = 32
SQLITE_MAX_INTEGER = 2**63 - 1

UPDATABLE_FIELDS = ("subject", "content", "importance", "tags", "ttl_days", "expires_at", "embedding")

_V1_SCHEMA = """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        content TEXT NOT NULL,
        date_created TIMESTAMP NOT NULL,
        date_updated TIMESTAMP NOT NULL,
        expires_at TIMESTAMP,
        embedding TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_updated ON memories(date_updated DESC);
    CREATE INDEX IF NOT EXISTS idx_created ON memories(date_created);
    CREATE INDEX IF NOT EXISTS idx_expires ON memories(expires_at);
"""

_V2_COLUMNS = [
    ("importance", f"ALTER TABLE memories ADD COLUMN importance REAL NOT NULL DEFAULT {DEFAULT_IMPORTANCE}"),
    ("tags", "ALTER TABLE memories ADD COLUMN tags TEXT NOT NULL DEFAULT '[]'"),
    ("last_used_at", "ALTER TABLE memories ADD COLUMN last_used_at TIMESTAMP"),
    ("use_count", "ALTER TABLE memories ADD COLUMN use_count INTEGER NOT NULL DEFAULT 0"),
]

_FTS_SCHEMA = """
    CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
        subject,
        content,
        content='memories',
        content_rowid='rowid'
    );

    CREATE TRIGGER IF NOT EXISTS memories_fts_ai AFTER INSERT ON memories BEGIN
        INSERT INTO memory_fts(rowid, subject, content)
        VALUES (new.rowid, new.subject, new.content);
    END;

    CREATE TRIGGER IF NOT EXISTS memories_fts_ad AFTER DELETE ON memories BEGIN
        INSERT INTO memory_fts(memory_fts, rowid, subject, content)
        VALUES ('delete', old.rowid, old.subject, old.content);
    END;

    CREATE TRIGGER IF NOT EXISTS memories_fts_au AFTER UPDATE OF subject, content ON memories BEGIN
        INSERT INTO memory_fts(memory_fts, rowid, subject, content)
        VALUES ('delete', old.rowid, old.subject, old.content);
        INSERT INTO memory_fts(rowid, subject, content)
        VALUES (new.rowid, new.subject, new.content);
    END;
"""

_INSERT_SQL = """
    INSERT INTO memories
    (id, subject, content, date_created, date_updated, expires_at,
     importance, tags, last_used_at, use_count, embedding)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, 0, ?)
"""


def _encode_embedding(vector: Optional[List[float]]) -> Optional[str]:
    if not vector:
        return None
    return json.dumps(vector)


def _decode_embedding(raw: Optional[Union[str, bytes]], memory_id: str) -> Optional[List[float]]:
    """Stored vector -> cleaned list; anything unreadable means no vector"""
    if raw is None:
        return None
    try:
        values = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Memory {memory_id}: malformed embedding column, ignoring vector")
        return None
    if not isinstance(values, list):
        logger.warning(f"Memory {memory_id}: embedding column is not a list, ignoring vector")
        return None
    return sanitize_embedding(values)


def _sql_limit(limit: int) -> int:
    return min(limit, SQLITE_MAX_INTEGER)


def escape_like(query: str) -> str:
    """Escape the LIKE wildcards (with backslash as the escape character)"""
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _expiry_from_ttl(ttl_days: Any, now: datetime) -> Optional[datetime]:
    if ttl_days is None:
        return None
    if isinstance(ttl_days, bool) or not isinstance(ttl_days, Real):
        raise ValueError(f"ttl_days must be a number, got {ttl_days!r}")
    if not math.isfinite(ttl_days):
        return None
    try:
        return now + timedelta(days=float(ttl_days))
    except OverflowError:
        raise ValueError(f"ttl_days out of range: {ttl_days!r}") from None


class SQLiteStore:
    """Handles all SQLite database operations"""

    def __init__(
        self,
        db_path: Union[str, Path],
        fts_enabled: bool = True,
        content_max_length: int = DEFAULT_CONTENT_MAX_LENGTH,
    ):
        self.db_path = str(db_path)
        self.fts_enabled = fts_enabled
        self.content_max_length = content_max_length
        self.fts_available = False
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ===== LIFECYCLE =====

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit: single statements commit on their own, bulk import
        # opens its own explicit transaction
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def initialize(self):
        """Create or migrate the schema, then try to enable full-text search

        Raises:
            StoreInitializationError: the base schema could not be created
        """
        with self._lock:
            try:
                if self.conn is None:
                    self.conn = self._connect()
                self._migrate()
            except (sqlite3.Error, OSError) as e:
                logger.error(f"SQLite initialization failed: {e}")
                raise StoreInitializationError(f"Cannot create memory schema at {self.db_path}: {e}") from e

            self._init_fts()

        logger.info(
            f"SQLite initialized at {self.db_path} "
            f"(schema v{SCHEMA_VERSION}, fts={'yes' if self.fts_available else 'no'})"
        )

    def _migrate(self):
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]

        if version < 1:
            self.conn.executescript(_V1_SCHEMA)

        if version < 2:
            columns = {row[1] for row in self.conn.execute("PRAGMA table_info(memories)")}
            for col_name, sql in _V2_COLUMNS:
                if col_name not in columns:
                    logger.info(f"Migrating: adding {col_name} column")
                    self.conn.execute(sql)

        if version < SCHEMA_VERSION:
            self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _init_fts(self):
        if not self.fts_enabled:
            self.fts_available = False
            logger.info("Full-text index disabled by configuration, using substring search")
            return

        try:
            existed = self.conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'memory_fts'"
            ).fetchone() is not None
            self.conn.executescript(_FTS_SCHEMA)
            if not existed:
                # Index rows written before the index existed
                self.conn.execute("INSERT INTO memory_fts(memory_fts) VALUES ('rebuild')")
            self.fts_available = True
        except sqlite3.OperationalError as e:
            self.fts_available = False
            logger.warning(f"FTS5 unavailable, substring fallback enabled: {e}")

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("SQLiteStore used before initialize()")
        return self.conn

    def close(self):
        """Close database connection"""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info("SQLite connection closed")

    # ===== VALIDATION =====

    def _check_subject(self, subject: Any) -> str:
        if not isinstance(subject, str) or not subject:
            raise ValueError("subject must be a non-empty string")
        if len(subject) > SUBJECT_MAX_LENGTH:
            raise ValueError(f"subject exceeds {SUBJECT_MAX_LENGTH} characters")
        return subject

    def _check_content(self, content: Any) -> str:
        if not isinstance(content, str) or not content:
            raise ValueError("content must be a non-empty string")
        if len(content) > self.content_max_length:
            raise ValueError(f"content exceeds {self.content_max_length} characters")
        return content

    @staticmethod
    def _check_importance(importance: Any) -> float:
        if importance is None:
            return DEFAULT_IMPORTANCE
        if isinstance(importance, bool) or not isinstance(importance, Real) or not 0.0 <= importance <= 1.0:
            raise ValueError(f"importance must be a number between 0 and 1, got {importance!r}")
        return float(importance)

    @staticmethod
    def _check_tags(tags: Any) -> List[str]:
        if tags is None:
            return []
        if isinstance(tags, (str, bytes)) or not isinstance(tags, Sequence):
            raise ValueError("tags must be a list of strings")
        if len(tags) > MAX_TAGS:
            raise ValueError(f"at most {MAX_TAGS} tags are allowed")
        if not all(isinstance(t, str) for t in tags):
            raise ValueError("tags must be a list of strings")
        return list(tags)

    def _build_row(
        self,
        now: datetime,
        subject: Any,
        content: Any,
        ttl_days: Any = None,
        expires_at: Any = None,
        embedding: Any = None,
        importance: Any = None,
        tags: Any = None,
    ) -> tuple:
        expiry = _expiry_from_ttl(ttl_days, now)
        if expires_at is not None:
            expiry = parse_optional_timestamp(expires_at)
        return (
            str(uuid.uuid4()),
            self._check_subject(subject),
            self._check_content(content),
            now,
            now,
            expiry,
            self._check_importance(importance),
            json.dumps(self._check_tags(tags)),
            _encode_embedding(sanitize_embedding(embedding)),
        )

    # ===== CRUD =====

    def insert(
        self,
        subject: str,
        content: str,
        ttl_days: Optional[float] = None,
        embedding: Optional[Sequence[float]] = None,
        importance: Optional[float] = None,
        tags: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Insert a new memory and return its id"""
        row = self._build_row(
            now or utc_now(), subject, content,
            ttl_days=ttl_days, embedding=embedding, importance=importance, tags=tags,
        )
        with self._lock:
            self._require_conn().execute(_INSERT_SQL, row)
        logger.debug(f"Stored memory {row[0]}")
        return row[0]

    def update(self, memory_id: str, patch: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        """Apply a partial update

        Fields are applied in UPDATABLE_FIELDS order, so an explicit
        expires_at overrides an expiry computed from ttl_days in the same
        call. An empty patch or a missing id changes nothing.

        Returns:
            True if a row was changed
        """
        unknown = set(patch) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if not patch:
            return False

        now = now or utc_now()
        columns: Dict[str, Any] = {}
        for name in UPDATABLE_FIELDS:
            if name not in patch:
                continue
            value = patch[name]
            if name == "subject":
                columns["subject"] = self._check_subject(value)
            elif name == "content":
                columns["content"] = self._check_content(value)
            elif name == "importance":
                columns["importance"] = self._check_importance(value)
            elif name == "tags":
                columns["tags"] = json.dumps(self._check_tags(value))
            elif name == "ttl_days":
                columns["expires_at"] = _expiry_from_ttl(value, now)
            elif name == "expires_at":
                columns["expires_at"] = parse_optional_timestamp(value)
            elif name == "embedding":
                columns["embedding"] = _encode_embedding(sanitize_embedding(value))

        assignments = ", ".join(f"{col} = ?" for col in columns)
        params = list(columns.values()) + [now, memory_id]
        with self._lock:
            cursor = self._require_conn().execute(
                f"UPDATE memories SET {assignments}, date_updated = MAX(date_created, ?) WHERE id = ?",
                params,
            )
        changed = cursor.rowcount > 0
        if not changed:
            logger.debug(f"Update skipped, memory not found: {memory_id}")
        return changed

    def delete(self, memory_id: str) -> bool:
        with self._lock:
            cursor = self._require_conn().execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return cursor.rowcount > 0

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        """Retrieve memory by ID"""
        with self._lock:
            row = self._require_conn().execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list(self, limit: int) -> List[MemoryRecord]:
        """Most recently updated first"""
        return self._fetch(
            "SELECT * FROM memories ORDER BY date_updated DESC, rowid DESC LIMIT ?", (_sql_limit(limit),)
        )

    def export_all(self) -> List[MemoryRecord]:
        """Every memory, oldest first"""
        return self._fetch("SELECT * FROM memories ORDER BY date_created ASC, rowid ASC", ())

    def import_all(self, items: Sequence[Dict[str, Any]], now: Optional[datetime] = None) -> List[str]:
        """Insert a batch atomically; any failure rolls back the whole batch

        Each item gets a fresh id and fresh timestamps. Recognised keys:
        subject, content, ttl_days, expires_at, importance, tags, embedding.

        Returns:
            ids of the inserted memories, in input order
        """
        now = now or utc_now()
        ids: List[str] = []
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                for item in items:
                    row = self._build_row(
                        now,
                        item.get("subject"),
                        item.get("content"),
                        ttl_days=item.get("ttl_days"),
                        expires_at=item.get("expires_at"),
                        embedding=item.get("embedding"),
                        importance=item.get("importance"),
                        tags=item.get("tags"),
                    )
                    conn.execute(_INSERT_SQL, row)
                    ids.append(row[0])
                conn.execute("COMMIT")
            except BaseException:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error(f"Rollback after failed import also failed: {rollback_error}")
                raise
        logger.info(f"Imported {len(ids)} memories")
        return ids

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every memory whose expiry has passed; returns the count"""
        with self._lock:
            cursor = self._require_conn().execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now or utc_now(),),
            )
        if cursor.rowcount:
            logger.info(f"Expired {cursor.rowcount} memories")
        return cursor.rowcount

    # ===== SEARCH PRIMITIVES =====

    def search_fts(self, query: str, limit: int) -> List[MemoryRecord]:
        """Full-text search in index relevance order

        Raises:
            sqlite3.OperationalError: index unavailable or query rejected by FTS5
        """
        if not self.fts_available:
            raise sqlite3.OperationalError("full-text index unavailable")
        return self._fetch(
            """
            SELECT m.* FROM memory_fts f
            JOIN memories m ON m.rowid = f.rowid
            WHERE memory_fts MATCH ?
            ORDER BY f.rank
            LIMIT ?
            """,
            (query, _sql_limit(limit)),
        )

    def search_like(self, query: str, limit: int) -> List[MemoryRecord]:
        """Case-insensitive substring match over subject or content, newest first"""
        pattern = f"%{escape_like(query)}%"
        return self._fetch(
            """
            SELECT * FROM memories
            WHERE subject LIKE ? ESCAPE '\\' OR content LIKE ? ESCAPE '\\'
            ORDER BY date_updated DESC, rowid DESC
            LIMIT ?
            """,
            (pattern, pattern, _sql_limit(limit)),
        )

    def recent_with_embeddings(self, limit: int) -> List[MemoryRecord]:
        return self._fetch(
            """
            SELECT * FROM memories
            WHERE embedding IS NOT NULL
            ORDER BY date_updated DESC, rowid DESC
            LIMIT ?
            """,
            (_sql_limit(limit),),
        )

    def mark_used(self, memory_ids: Sequence[str], now: Optional[datetime] = None):
        """Bump use_count and last_used_at for memories surfaced by recall"""
        if not memory_ids:
            return
        now = now or utc_now()
        with self._lock:
            self._require_conn().executemany(
                "UPDATE memories SET use_count = use_count + 1, last_used_at = ? WHERE id = ?",
                [(now, memory_id) for memory_id in memory_ids],
            )

    def count(self) -> int:
        with self._lock:
            return self._require_conn().execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    # ===== ROW MAPPING =====

    def _fetch(self, sql: str, params: tuple) -> List[MemoryRecord]:
        with self._lock:
            rows = self._require_conn().execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord.from_row(row, embedding=_decode_embedding(row["embedding"], row["id"]))
