"""Persisted-table contract for the search index and an in-memory implementation.

The engine only depends on a narrow capability set per table:

* ``clear()`` / ``bulk_add(rows)`` / ``add(row)`` / ``put(row)``
* ``where(field).equals(value)`` returning a query with ``to_array()``,
  ``first()`` and ``delete()``
* ``count_by(field, values)`` and ``count_distinct(field)`` for aggregate
  lookups that would otherwise fetch every row

Every operation is a coroutine so backends can suspend the caller. No joins,
transactions or schema migrations are assumed.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
import logging
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

from flashcard_search.domain.model import IndexEntry, TermStat, TrigramEntry


logger = logging.getLogger(__name__)

RowT = TypeVar("RowT", bound=BaseModel)

SEARCH_INDEX = "search_index"
SEARCH_TRIGRAMS = "search_trigrams"
SEARCH_TERM_STATS = "search_term_stats"


class StorageError(ValueError):
    """Raised when a table is queried on an unknown field or given a foreign row."""


class TableQuery(Protocol[RowT]):
    """Result of ``where(field).equals(value)``."""

    async def to_array(self) -> list[RowT]:  # pragma: no cover - interface definition
        ...

    async def first(self) -> RowT | None:  # pragma: no cover - interface definition
        ...

    async def delete(self) -> int:  # pragma: no cover - interface definition
        ...


class WhereClause(Protocol[RowT]):
    def equals(self, value: Any) -> TableQuery[RowT]:  # pragma: no cover - interface definition
        ...


class IndexTable(Protocol[RowT]):
    """Capability set the engine needs from one persisted table."""

    name: str

    async def clear(self) -> None:  # pragma: no cover - interface definition
        ...

    async def bulk_add(self, rows: Sequence[RowT]) -> None:  # pragma: no cover - interface definition
        ...

    async def add(self, row: RowT) -> None:  # pragma: no cover - interface definition
        ...

    async def put(self, row: RowT) -> None:  # pragma: no cover - interface definition
        ...

    def where(self, field_name: str) -> WhereClause[RowT]:  # pragma: no cover - interface definition
        ...

    async def count_by(self, field_name: str, values: Iterable[Any]) -> dict[Any, int]:  # pragma: no cover
        ...

    async def count_distinct(self, field_name: str) -> int:  # pragma: no cover - interface definition
        ...


@dataclass
class IndexTables:
    """The three logical tables backing the search engine."""

    search_index: IndexTable[IndexEntry]
    search_trigrams: IndexTable[TrigramEntry]
    search_term_stats: IndexTable[TermStat]

    def all(self) -> tuple[IndexTable[Any], ...]:
        return (self.search_index, self.search_trigrams, self.search_term_stats)


class _MemoryQuery(Generic[RowT]):
    def __init__(self, table: InMemoryTable[RowT], field_name: str, value: Any) -> None:
        self._table = table
        self._field = field_name
        self._value = value

    def _matches(self, row: RowT) -> bool:
        return getattr(row, self._field) == self._value

    async def to_array(self) -> list[RowT]:
        return [row for row in self._table.rows if self._matches(row)]

    async def first(self) -> RowT | None:
        return next((row for row in self._table.rows if self._matches(row)), None)

    async def delete(self) -> int:
        kept = [row for row in self._table.rows if not self._matches(row)]
        removed = len(self._table.rows) - len(kept)
        self._table.rows[:] = kept
        return removed


class _MemoryWhere(Generic[RowT]):
    def __init__(self, table: InMemoryTable[RowT], field_name: str) -> None:
        self._table = table
        self._field = field_name

    def equals(self, value: Any) -> _MemoryQuery[RowT]:
        return _MemoryQuery(self._table, self._field, value)


@dataclass
class InMemoryTable(Generic[RowT]):
    """List-backed table; ``put`` upserts on ``key_field`` when one is set."""

    name: str
    row_type: type[RowT]
    key_field: str | None = None
    rows: list[RowT] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def _check_row(self, row: RowT) -> RowT:
        if not isinstance(row, self.row_type):
            raise StorageError(f"{self.name} expects {self.row_type.__name__} rows, got {type(row).__name__}")
        return row

    async def clear(self) -> None:
        self.rows.clear()

    async def bulk_add(self, rows: Iterable[RowT]) -> None:
        self.rows.extend(self._check_row(row) for row in rows)

    async def add(self, row: RowT) -> None:
        self.rows.append(self._check_row(row))

    async def put(self, row: RowT) -> None:
        self._check_row(row)
        if self.key_field is not None:
            key = getattr(row, self.key_field)
            for idx, existing in enumerate(self.rows):
                if getattr(existing, self.key_field) == key:
                    self.rows[idx] = row
                    return
        self.rows.append(row)

    def _check_field(self, field_name: str) -> str:
        if field_name not in self.row_type.model_fields:
            raise StorageError(f"{self.name} has no field '{field_name}'")
        return field_name

    def where(self, field_name: str) -> _MemoryWhere[RowT]:
        return _MemoryWhere(self, self._check_field(field_name))

    async def count_by(self, field_name: str, values: Iterable[Any]) -> dict[Any, int]:
        """Rows per value of ``field_name``, restricted to ``values``; absent values are omitted."""
        self._check_field(field_name)
        wanted = set(values)
        counts = Counter(getattr(row, field_name) for row in self.rows)
        return {value: counts[value] for value in wanted if counts[value]}

    async def count_distinct(self, field_name: str) -> int:
        self._check_field(field_name)
        return len({getattr(row, field_name) for row in self.rows})


def create_memory_tables() -> IndexTables:
    """Build a fresh set of in-memory index tables."""

    return IndexTables(
        search_index=InMemoryTable(SEARCH_INDEX, IndexEntry),
        search_trigrams=InMemoryTable(SEARCH_TRIGRAMS, TrigramEntry),
        search_term_stats=InMemoryTable(SEARCH_TERM_STATS, TermStat, key_field="term"),
    )
