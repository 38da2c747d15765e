"""Tests for the SQLite-backed index tables."""

from pathlib import Path
import sqlite3

import pytest

from flashcard_search.domain.model import IndexEntry, TermStat, TrigramEntry
from flashcard_search.search.sqlite_pragmas import apply_index_pragmas
from flashcard_search.search.sqlite_storage import SqliteIndexStore
from flashcard_search.search.storage import StorageError


@pytest.fixture
def store():
    store = SqliteIndexStore()
    yield store
    store.close()


@pytest.mark.unit
class TestSqliteTables:
    @pytest.mark.asyncio
    async def test_postings_roundtrip_through_where(self, store):
        tables = store.tables()
        await tables.search_index.bulk_add(
            [IndexEntry(term="chat", card_id="c1", tf=2), IndexEntry(term="chat", card_id="c2")]
        )

        rows = await tables.search_index.where("term").equals("chat").to_array()

        assert rows == [IndexEntry(term="chat", card_id="c1", tf=2), IndexEntry(term="chat", card_id="c2")]

    @pytest.mark.asyncio
    async def test_delete_and_first(self, store):
        tables = store.tables()
        await tables.search_trigrams.bulk_add([TrigramEntry(tri="  c", card_id="c1"), TrigramEntry(tri=" ch", card_id="c1")])

        assert await tables.search_trigrams.where("card_id").equals("c1").delete() == 2
        assert await tables.search_trigrams.where("card_id").equals("c1").first() is None

    @pytest.mark.asyncio
    async def test_term_stats_put_upserts(self, store):
        stats = store.tables().search_term_stats
        await stats.add(TermStat(term="chat", doc_freq=1))
        await stats.put(TermStat(term="chat", doc_freq=4))

        assert await stats.where("term").equals("chat").to_array() == [TermStat(term="chat", doc_freq=4)]

    @pytest.mark.asyncio
    async def test_clear_empties_only_that_table(self, store):
        tables = store.tables()
        await tables.search_index.add(IndexEntry(term="chat", card_id="c1"))
        await tables.search_trigrams.add(TrigramEntry(tri="  c", card_id="c1"))

        await tables.search_index.clear()

        assert await tables.search_index.where("card_id").equals("c1").to_array() == []
        assert len(await tables.search_trigrams.where("card_id").equals("c1").to_array()) == 1

    @pytest.mark.asyncio
    async def test_count_by_groups_many_values(self, store, monkeypatch):
        from flashcard_search.search import sqlite_storage

        monkeypatch.setattr(sqlite_storage, "_MAX_SQL_PARAMS", 3)
        trigrams = store.tables().search_trigrams
        await trigrams.bulk_add(
            [TrigramEntry(tri=tri, card_id=f"c{i}") for i in range(7) for tri in ("  c", " ch", "cha")[: i % 3 + 1]]
        )

        counts = await trigrams.count_by("card_id", [f"c{i}" for i in range(8)])

        assert counts == {f"c{i}": i % 3 + 1 for i in range(7)}
        assert await trigrams.count_by("card_id", []) == {}

    @pytest.mark.asyncio
    async def test_count_distinct(self, store):
        index = store.tables().search_index
        await index.bulk_add(
            [
                IndexEntry(term="chat", card_id="c1"),
                IndexEntry(term="noir", card_id="c1"),
                IndexEntry(term="chat", card_id="c2"),
            ]
        )

        assert await index.count_distinct("card_id") == 2
        with pytest.raises(StorageError, match="no field"):
            await index.count_distinct("card_id) FROM search_index; --")

    @pytest.mark.asyncio
    async def test_empty_bulk_add_is_noop(self, store):
        await store.tables().search_index.bulk_add([])

    def test_unknown_field_rejected(self, store):
        with pytest.raises(StorageError, match="no field"):
            store.tables().search_index.where("card_id; DROP TABLE search_index")

    @pytest.mark.asyncio
    async def test_foreign_row_rejected(self, store):
        with pytest.raises(StorageError):
            await store.tables().search_trigrams.add(IndexEntry(term="chat", card_id="c1"))

    @pytest.mark.asyncio
    async def test_closed_store_raises(self):
        store = SqliteIndexStore()
        tables = store.tables()
        store.close()

        with pytest.raises(StorageError, match="closed"):
            await tables.search_index.where("term").equals("chat").to_array()

    @pytest.mark.asyncio
    async def test_file_database_persists_rows(self, tmp_path: Path):
        db_path = tmp_path / "nested" / "index.db"
        store = SqliteIndexStore(db_path)
        await store.tables().search_index.add(IndexEntry(term="chat", card_id="c1"))
        store.close()

        reopened = SqliteIndexStore(db_path)
        try:
            rows = await reopened.tables().search_index.where("term").equals("chat").to_array()
            assert [r.card_id for r in rows] == ["c1"]
        finally:
            reopened.close()


@pytest.mark.unit
def test_apply_index_pragmas_enables_wal_on_files(tmp_path: Path):
    conn = sqlite3.connect(tmp_path / "p.db")
    try:
        apply_index_pragmas(conn)
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    finally:
        conn.close()


@pytest.mark.unit
def test_apply_index_pragmas_skips_wal_in_memory():
    conn = sqlite3.connect(":memory:")
    try:
        apply_index_pragmas(conn, in_memory=True, busy_timeout_ms=None)
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "memory"
    finally:
        conn.close()
