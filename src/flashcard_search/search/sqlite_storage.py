"""SQLite-backed implementation of the index-table contract.

One connection is shared by the three tables and guarded by a lock; every
statement runs on a worker thread through ``asyncio.to_thread`` so table
operations suspend the caller instead of blocking the event loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from flashcard_search.domain.model import IndexEntry, TermStat, TrigramEntry
from flashcard_search.search.sqlite_pragmas import apply_index_pragmas
from flashcard_search.search.storage import (
    SEARCH_INDEX,
    SEARCH_TERM_STATS,
    SEARCH_TRIGRAMS,
    IndexTables,
    StorageError,
)


logger = logging.getLogger(__name__)

RowT = TypeVar("RowT", bound=BaseModel)

_T = TypeVar("_T")

# Stays below SQLITE_MAX_VARIABLE_NUMBER on older builds
_MAX_SQL_PARAMS = 500

_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {SEARCH_INDEX} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        term TEXT NOT NULL,
        card_id TEXT NOT NULL,
        tf INTEGER NOT NULL DEFAULT 1
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_{SEARCH_INDEX}_term ON {SEARCH_INDEX}(term)",
    f"CREATE INDEX IF NOT EXISTS idx_{SEARCH_INDEX}_card ON {SEARCH_INDEX}(card_id)",
    f"""
    CREATE TABLE IF NOT EXISTS {SEARCH_TRIGRAMS} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tri TEXT NOT NULL,
        card_id TEXT NOT NULL
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_{SEARCH_TRIGRAMS}_tri ON {SEARCH_TRIGRAMS}(tri)",
    f"CREATE INDEX IF NOT EXISTS idx_{SEARCH_TRIGRAMS}_card ON {SEARCH_TRIGRAMS}(card_id)",
    f"""
    CREATE TABLE IF NOT EXISTS {SEARCH_TERM_STATS} (
        term TEXT PRIMARY KEY,
        doc_freq INTEGER NOT NULL
    ) WITHOUT ROWID
    """,
)


class SqliteIndexStore:
    """Owns the SQLite connection behind the three index tables."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        in_memory = self.db_path == ":memory:"
        if not in_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        apply_index_pragmas(self._conn, in_memory=in_memory)
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)
        logger.debug("SQLite index store ready at %s", self.db_path)

    def _run_sync(self, operation: Callable[[sqlite3.Connection], _T]) -> _T:
        if self._conn is None:
            raise StorageError("SQLite index store is closed")
        with self._lock, self._conn:
            return operation(self._conn)

    async def run(self, operation: Callable[[sqlite3.Connection], _T]) -> _T:
        return await asyncio.to_thread(self._run_sync, operation)

    def tables(self) -> IndexTables:
        return IndexTables(
            search_index=SqliteTable(self, SEARCH_INDEX, IndexEntry),
            search_trigrams=SqliteTable(self, SEARCH_TRIGRAMS, TrigramEntry),
            search_term_stats=SqliteTable(self, SEARCH_TERM_STATS, TermStat, key_field="term"),
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class _SqliteQuery(Generic[RowT]):
    def __init__(self, table: SqliteTable[RowT], field_name: str, value: Any) -> None:
        self._table = table
        self._field = field_name
        self._value = value

    async def to_array(self) -> list[RowT]:
        sql = f"SELECT {self._table.column_list} FROM {self._table.name} WHERE {self._field} = ?"
        rows = await self._table.store.run(lambda conn: conn.execute(sql, (self._value,)).fetchall())
        return [self._table.to_row(row) for row in rows]

    async def first(self) -> RowT | None:
        sql = f"SELECT {self._table.column_list} FROM {self._table.name} WHERE {self._field} = ? LIMIT 1"
        row = await self._table.store.run(lambda conn: conn.execute(sql, (self._value,)).fetchone())
        return self._table.to_row(row) if row is not None else None

    async def delete(self) -> int:
        sql = f"DELETE FROM {self._table.name} WHERE {self._field} = ?"
        return await self._table.store.run(lambda conn: conn.execute(sql, (self._value,)).rowcount)


class _SqliteWhere(Generic[RowT]):
    def __init__(self, table: SqliteTable[RowT], field_name: str) -> None:
        self._table = table
        self._field = field_name

    def equals(self, value: Any) -> _SqliteQuery[RowT]:
        return _SqliteQuery(self._table, self._field, value)


class SqliteTable(Generic[RowT]):
    """One index table stored in SQLite; columns mirror the row model fields."""

    def __init__(
        self,
        store: SqliteIndexStore,
        name: str,
        row_type: type[RowT],
        *,
        key_field: str | None = None,
    ) -> None:
        self.store = store
        self.name = name
        self.row_type = row_type
        self.key_field = key_field
        self.columns = tuple(row_type.model_fields)
        self.column_list = ", ".join(self.columns)
        placeholders = ", ".join("?" for _ in self.columns)
        self._insert_sql = f"INSERT INTO {name} ({self.column_list}) VALUES ({placeholders})"
        self._upsert_sql = f"INSERT OR REPLACE INTO {name} ({self.column_list}) VALUES ({placeholders})"

    def to_row(self, values: Iterable[Any]) -> RowT:
        return self.row_type(**dict(zip(self.columns, values, strict=True)))

    def _values(self, row: RowT) -> tuple[Any, ...]:
        if not isinstance(row, self.row_type):
            raise StorageError(f"{self.name} expects {self.row_type.__name__} rows, got {type(row).__name__}")
        return tuple(getattr(row, column) for column in self.columns)

    async def clear(self) -> None:
        await self.store.run(lambda conn: conn.execute(f"DELETE FROM {self.name}"))

    async def bulk_add(self, rows: Iterable[RowT]) -> None:
        values = [self._values(row) for row in rows]
        if not values:
            return
        await self.store.run(lambda conn: conn.executemany(self._insert_sql, values))

    async def add(self, row: RowT) -> None:
        values = self._values(row)
        await self.store.run(lambda conn: conn.execute(self._insert_sql, values))

    async def put(self, row: RowT) -> None:
        values = self._values(row)
        sql = self._upsert_sql if self.key_field is not None else self._insert_sql
        await self.store.run(lambda conn: conn.execute(sql, values))

    def _check_field(self, field_name: str) -> str:
        # Column names are interpolated into SQL, so only model fields are accepted
        if field_name not in self.columns:
            raise StorageError(f"{self.name} has no field '{field_name}'")
        return field_name

    def where(self, field_name: str) -> _SqliteWhere[RowT]:
        return _SqliteWhere(self, self._check_field(field_name))

    async def count_by(self, field_name: str, values: Iterable[Any]) -> dict[Any, int]:
        """Rows per value of ``field_name`` among ``values``, one grouped query per parameter chunk."""
        column = self._check_field(field_name)
        wanted = list(dict.fromkeys(values))

        def count(conn: sqlite3.Connection) -> dict[Any, int]:
            counts: dict[Any, int] = {}
            for start in range(0, len(wanted), _MAX_SQL_PARAMS):
                chunk = wanted[start : start + _MAX_SQL_PARAMS]
                placeholders = ", ".join("?" for _ in chunk)
                sql = (
                    f"SELECT {column}, COUNT(*) FROM {self.name} "
                    f"WHERE {column} IN ({placeholders}) GROUP BY {column}"
                )
                counts.update(conn.execute(sql, chunk).fetchall())
            return counts

        if not wanted:
            return {}
        return await self.store.run(count)

    async def count_distinct(self, field_name: str) -> int:
        column = self._check_field(field_name)
        sql = f"SELECT COUNT(DISTINCT {column}) FROM {self.name}"
        return await self.store.run(lambda conn: conn.execute(sql).fetchone()[0])
