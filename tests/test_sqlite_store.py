"""Tests for the SQLite record store."""

import math
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from memory_mcp.errors import RecordDecodeError, StoreInitializationError
from memory_mcp.storage import SQLiteStore, SCHEMA_VERSION
from memory_mcp.storage.sqlite_store import _V1_SCHEMA, escape_like

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def require_fts(store: SQLiteStore):
    if not store.fts_available:
        pytest.skip("FTS5 is not compiled into this SQLite build")


# ===== SCHEMA =====

def test_initialize_sets_schema_version(sqlite_store):
    version = sqlite_store.conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == SCHEMA_VERSION


def test_initialize_is_idempotent(db_path):
    store = SQLiteStore(db_path)
    store.initialize()
    store.insert("subject", "content")
    store.close()

    reopened = SQLiteStore(db_path)
    reopened.initialize()
    assert reopened.count() == 1
    reopened.close()


def test_initialize_failure_raises(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file, not a directory")
    store = SQLiteStore(str(blocker / "memory.db"))
    with pytest.raises(StoreInitializationError):
        store.initialize()


def test_migrates_version_one_database(db_path):
    conn = sqlite3.connect(db_path)
    conn.executescript(_V1_SCHEMA)
    conn.execute(
        "INSERT INTO memories (id, subject, content, date_created, date_updated) VALUES (?, ?, ?, ?, ?)",
        ("legacy-1", "legacy note", "written before tags existed",
         "2024-06-01T00:00:00.000000+00:00", "2024-06-01T00:00:00.000000+00:00"),
    )
    conn.commit()
    conn.close()

    store = SQLiteStore(db_path)
    store.initialize()

    record = store.get("legacy-1")
    assert record.importance == 0.5
    assert record.tags == []
    assert record.use_count == 0
    assert record.last_used_at is None
    assert store.conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION

    if store.fts_available:
        # Rows written before the index existed are searchable
        assert [r.id for r in store.search_fts("legacy", 5)] == ["legacy-1"]
    store.close()


def test_timestamps_stored_as_fixed_width_utc_text(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", now=T0)
    raw = sqlite_store.conn.execute(
        "SELECT date_created FROM memories WHERE id = ?", (memory_id,)
    ).fetchone()[0]
    assert raw == "2025-01-01T12:00:00.000000+00:00"


# ===== CRUD =====

def test_insert_and_get_round_trip(sqlite_store):
    memory_id = sqlite_store.insert(
        "favorite color",
        "The user's favorite color is blue",
        importance=0.9,
        tags=["preference", "color"],
        embedding=[0.1, 0.2, 0.3],
        now=T0,
    )

    record = sqlite_store.get(memory_id)
    assert record.id == memory_id
    assert record.subject == "favorite color"
    assert record.content == "The user's favorite color is blue"
    assert record.importance == 0.9
    assert record.tags == ["preference", "color"]
    assert record.embedding == [0.1, 0.2, 0.3]
    assert record.date_created == T0
    assert record.date_updated == T0
    assert record.expires_at is None
    assert record.use_count == 0


def test_ids_are_unique(sqlite_store):
    ids = {sqlite_store.insert("s", f"c{i}") for i in range(20)}
    assert len(ids) == 20


def test_get_missing_returns_none(sqlite_store):
    assert sqlite_store.get("nope") is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"subject": "", "content": "c"},
        {"subject": "x" * 161, "content": "c"},
        {"subject": "s", "content": ""},
        {"subject": "s", "content": "c", "importance": 1.5},
        {"subject": "s", "content": "c", "tags": ["t"] * 33},
        {"subject": "s", "content": "c", "tags": "not-a-list"},
        {"subject": "s", "content": "c", "ttl_days": "soon"},
    ],
)
def test_insert_rejects_invalid_values(sqlite_store, kwargs):
    with pytest.raises(ValueError):
        sqlite_store.insert(**kwargs)
    assert sqlite_store.count() == 0


def test_content_limit_follows_configured_maximum(db_path):
    store = SQLiteStore(db_path, content_max_length=10)
    store.initialize()
    store.insert("s", "x" * 10)
    with pytest.raises(ValueError):
        store.insert("s", "x" * 11)
    store.close()


def test_ttl_sets_expiry(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", ttl_days=1.5, now=T0)
    assert sqlite_store.get(memory_id).expires_at == T0 + timedelta(days=1.5)


def test_infinite_ttl_means_no_expiry(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", ttl_days=math.inf, now=T0)
    assert sqlite_store.get(memory_id).expires_at is None


def test_update_changes_only_given_fields(sqlite_store):
    memory_id = sqlite_store.insert("subject", "old content", importance=0.3, tags=["a"], now=T0)
    later = T0 + timedelta(hours=1)

    assert sqlite_store.update(memory_id, {"content": "new content"}, now=later)

    record = sqlite_store.get(memory_id)
    assert record.subject == "subject"
    assert record.content == "new content"
    assert record.importance == 0.3
    assert record.tags == ["a"]
    assert record.date_created == T0
    assert record.date_updated == later


def test_update_subject_leaves_other_fields_untouched(sqlite_store):
    vector = [0.25, -0.5, 0.125]
    memory_id = sqlite_store.insert("subject", "content", ttl_days=10, embedding=vector, now=T0)
    before = sqlite_store.get(memory_id)

    assert sqlite_store.update(memory_id, {"subject": "renamed"}, now=T0 + timedelta(hours=1))

    after = sqlite_store.get(memory_id)
    assert after.subject == "renamed"
    assert after.content == before.content
    assert after.expires_at == before.expires_at
    assert after.embedding == vector


def test_update_never_moves_date_updated_before_creation(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", now=T0)
    sqlite_store.update(memory_id, {"importance": 0.7}, now=T0 - timedelta(days=1))
    record = sqlite_store.get(memory_id)
    assert record.date_updated == record.date_created


def test_update_expires_at_wins_over_ttl(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", now=T0)
    sqlite_store.update(
        memory_id,
        {"ttl_days": 1, "expires_at": "2031-05-05T00:00:00Z"},
        now=T0,
    )
    assert sqlite_store.get(memory_id).expires_at == datetime(2031, 5, 5, tzinfo=timezone.utc)


def test_update_can_clear_expiry(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", ttl_days=1, now=T0)
    sqlite_store.update(memory_id, {"expires_at": None}, now=T0)
    assert sqlite_store.get(memory_id).expires_at is None


def test_update_empty_patch_is_noop(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", now=T0)
    assert sqlite_store.update(memory_id, {}) is False
    assert sqlite_store.get(memory_id).date_updated == T0


def test_update_missing_id_returns_false(sqlite_store):
    assert sqlite_store.update("missing", {"content": "x"}) is False


def test_update_rejects_unknown_fields(sqlite_store):
    memory_id = sqlite_store.insert("s", "c")
    with pytest.raises(ValueError):
        sqlite_store.update(memory_id, {"date_created": "2020-01-01"})


def test_update_validates_values(sqlite_store):
    memory_id = sqlite_store.insert("s", "c")
    with pytest.raises(ValueError):
        sqlite_store.update(memory_id, {"subject": ""})
    assert sqlite_store.get(memory_id).subject == "s"


def test_delete(sqlite_store):
    memory_id = sqlite_store.insert("s", "c")
    assert sqlite_store.delete(memory_id) is True
    assert sqlite_store.get(memory_id) is None
    assert sqlite_store.delete(memory_id) is False


def test_list_orders_by_last_update(sqlite_store):
    a = sqlite_store.insert("a", "first", now=T0)
    b = sqlite_store.insert("b", "second", now=T0 + timedelta(seconds=1))
    c = sqlite_store.insert("c", "third", now=T0 + timedelta(seconds=2))

    assert [r.id for r in sqlite_store.list(2)] == [c, b]

    sqlite_store.update(a, {"content": "touched"}, now=T0 + timedelta(seconds=3))
    assert [r.id for r in sqlite_store.list(10)] == [a, c, b]


def test_export_orders_oldest_first(sqlite_store):
    ids = [sqlite_store.insert("s", f"c{i}", now=T0 + timedelta(minutes=i)) for i in range(3)]
    sqlite_store.update(ids[0], {"content": "edited"}, now=T0 + timedelta(hours=1))
    assert [r.id for r in sqlite_store.export_all()] == ids


# ===== EXPIRY =====

def test_expired_records_stay_until_sweep(sqlite_store):
    expiring = sqlite_store.insert("temp", "short lived", ttl_days=1, now=T0)
    keeper = sqlite_store.insert("keep", "no expiry", now=T0)
    later = T0 + timedelta(days=2)

    record = sqlite_store.get(expiring)
    assert record is not None
    assert record.is_expired(later)

    assert sqlite_store.cleanup_expired(now=later) == 1
    assert sqlite_store.get(expiring) is None
    assert sqlite_store.get(keeper) is not None
    assert sqlite_store.cleanup_expired(now=later) == 0


# ===== IMPORT =====

def test_import_assigns_fresh_ids(sqlite_store):
    items = [
        {"subject": "one", "content": "first", "tags": ["x"]},
        {"subject": "two", "content": "second", "expires_at": "2030-01-01T00:00:00Z"},
    ]
    ids = sqlite_store.import_all(items, now=T0)

    assert len(ids) == 2
    assert sqlite_store.count() == 2
    first, second = (sqlite_store.get(i) for i in ids)
    assert first.tags == ["x"]
    assert first.date_created == T0
    assert second.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_import_is_all_or_nothing(sqlite_store):
    existing = sqlite_store.insert("existing", "already here")
    items = [
        {"subject": "good", "content": "fine"},
        {"subject": "", "content": "invalid subject"},
    ]

    with pytest.raises(ValueError):
        sqlite_store.import_all(items)

    assert sqlite_store.count() == 1
    assert sqlite_store.get(existing) is not None
    # Connection is usable after the rollback
    assert sqlite_store.import_all([{"subject": "later", "content": "ok"}])


def test_import_interrupted_mid_batch_rolls_back(sqlite_store, monkeypatch):
    build_row = sqlite_store._build_row
    calls = []

    def interrupt_second(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise KeyboardInterrupt
        return build_row(*args, **kwargs)

    monkeypatch.setattr(sqlite_store, "_build_row", interrupt_second)
    with pytest.raises(KeyboardInterrupt):
        sqlite_store.import_all([{"subject": "a", "content": "1"}, {"subject": "b", "content": "2"}])

    monkeypatch.undo()
    assert sqlite_store.count() == 0
    assert len(sqlite_store.import_all([{"subject": "c", "content": "3"}])) == 1


# ===== SEARCH PRIMITIVES =====

def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_like_search_treats_wildcards_literally(sqlite_store):
    percent = sqlite_store.insert("sale", "100% off everything")
    sqlite_store.insert("sale", "100 percent off nothing")
    underscore = sqlite_store.insert("naming", "use snake_case here")
    sqlite_store.insert("naming", "use snakeXcase there")

    assert [r.id for r in sqlite_store.search_like("100%", 10)] == [percent]
    assert [r.id for r in sqlite_store.search_like("e_c", 10)] == [underscore]


def test_like_search_is_case_insensitive(sqlite_store):
    memory_id = sqlite_store.insert("Weather", "Blue Sky today")
    assert [r.id for r in sqlite_store.search_like("blue sky", 10)] == [memory_id]
    assert [r.id for r in sqlite_store.search_like("WEATHER", 10)] == [memory_id]


def test_fts_index_follows_updates_and_deletes(sqlite_store):
    require_fts(sqlite_store)
    memory_id = sqlite_store.insert("fruit", "apples are red")
    assert [r.id for r in sqlite_store.search_fts("apples", 10)] == [memory_id]

    sqlite_store.update(memory_id, {"content": "bananas are yellow"})
    assert sqlite_store.search_fts("apples", 10) == []
    assert [r.id for r in sqlite_store.search_fts("bananas", 10)] == [memory_id]

    sqlite_store.delete(memory_id)
    assert sqlite_store.search_fts("bananas", 10) == []


def test_fts_rejects_malformed_query(sqlite_store):
    require_fts(sqlite_store)
    sqlite_store.insert("s", "content")
    with pytest.raises(sqlite3.OperationalError):
        sqlite_store.search_fts('"unbalanced', 10)


def test_fts_disabled_by_configuration(db_path):
    store = SQLiteStore(db_path, fts_enabled=False)
    store.initialize()
    assert store.fts_available is False
    store.insert("s", "content")
    with pytest.raises(sqlite3.OperationalError):
        store.search_fts("content", 10)
    store.close()


def test_recent_with_embeddings_skips_unembedded(sqlite_store):
    with_vector = sqlite_store.insert("a", "vector", embedding=[1.0, 0.0])
    sqlite_store.insert("b", "no vector")
    assert [r.id for r in sqlite_store.recent_with_embeddings(10)] == [with_vector]


def test_mark_used_bumps_usage(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", now=T0)
    used_at = T0 + timedelta(days=3)

    sqlite_store.mark_used([memory_id], now=used_at)
    sqlite_store.mark_used([memory_id], now=used_at)

    record = sqlite_store.get(memory_id)
    assert record.use_count == 2
    assert record.last_used_at == used_at
    assert record.date_updated == T0


# ===== DECODING =====

def test_malformed_embedding_column_reads_as_no_vector(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", embedding=[1.0, 2.0])
    sqlite_store.conn.execute("UPDATE memories SET embedding = 'not json' WHERE id = ?", (memory_id,))
    assert sqlite_store.get(memory_id).embedding is None

    sqlite_store.conn.execute("UPDATE memories SET embedding = '[1, \"x\", 2]' WHERE id = ?", (memory_id,))
    assert sqlite_store.get(memory_id).embedding == [1.0, 2.0]


def test_malformed_tags_column_reads_as_no_tags(sqlite_store):
    memory_id = sqlite_store.insert("s", "c", tags=["a"])
    sqlite_store.conn.execute("UPDATE memories SET tags = '{broken' WHERE id = ?", (memory_id,))
    assert sqlite_store.get(memory_id).tags == []


def test_impossible_primary_value_raises_decode_error(db_path):
    store = SQLiteStore(db_path, fts_enabled=False)
    store.initialize()
    memory_id = store.insert("s", "c")
    store.conn.execute("UPDATE memories SET subject = X'00' WHERE id = ?", (memory_id,))
    with pytest.raises(RecordDecodeError):
        store.get(memory_id)
    store.close()
