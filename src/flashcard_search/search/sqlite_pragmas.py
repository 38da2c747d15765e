"""Shared SQLite PRAGMA helpers for the index tables."""

from __future__ import annotations

import sqlite3


def apply_index_pragmas(
    conn: sqlite3.Connection,
    *,
    cache_size_kb: int = -16384,
    temp_store: str = "MEMORY",
    busy_timeout_ms: int | None = 30000,
    in_memory: bool = False,
) -> None:
    """Apply PRAGMAs tuned for small, write-heavy posting tables.

    WAL is skipped for ``:memory:`` databases, which cannot use it.
    """
    if busy_timeout_ms is not None:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    if not in_memory:
        conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA cache_size = {cache_size_kb}")
    conn.execute(f"PRAGMA temp_store = {temp_store}")
