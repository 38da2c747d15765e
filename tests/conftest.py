"""Shared test fixtures and configuration."""

from __future__ import annotations

import logging
import os
from pathlib import Path
import sys

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))


# Keep a developer's shell configuration out of the tests
for key in [name for name in os.environ if name.upper().startswith("FLASHCARD_SEARCH_")]:
    del os.environ[key]

from flashcard_search.config import SearchSettings  # noqa: E402
from flashcard_search.domain.model import Card  # noqa: E402
from flashcard_search.search.metrics import get_search_history  # noqa: E402
from flashcard_search.search.storage import IndexTables, InMemoryTable, create_memory_tables  # noqa: E402


class StaticCardSource:
    """Card source over a fixed list; counts ``get_all`` calls."""

    def __init__(self, cards: list[Card]) -> None:
        self.cards = list(cards)
        self.calls = 0

    async def get_all(self) -> list[Card]:
        self.calls += 1
        return list(self.cards)


class CountingTable(InMemoryTable):
    """In-memory table that records how often it was cleared."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.clear_calls = 0

    async def clear(self) -> None:
        self.clear_calls += 1
        await super().clear()


def counting_tables() -> IndexTables:
    base = create_memory_tables()
    return IndexTables(
        search_index=CountingTable(base.search_index.name, base.search_index.row_type),
        search_trigrams=CountingTable(base.search_trigrams.name, base.search_trigrams.row_type),
        search_term_stats=CountingTable(
            base.search_term_stats.name,
            base.search_term_stats.row_type,
            key_field="term",
        ),
    )


async def no_yield() -> None:
    """Yield hook that never gives control back to the loop."""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Drop FLASHCARD_SEARCH_* variables so settings start from defaults."""
    for key in list(os.environ):
        if key.upper().startswith("FLASHCARD_SEARCH_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def restore_package_logger():
    """``configure_logging`` detaches the package logger from root; undo it per test."""
    package_logger = logging.getLogger("flashcard_search")
    handlers, level, propagate = package_logger.handlers[:], package_logger.level, package_logger.propagate
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)
    package_logger.propagate = propagate


@pytest.fixture(autouse=True)
def reset_search_history():
    """Search durations are process-wide; isolate them per test."""
    get_search_history().reset()
    yield
    get_search_history().reset()


@pytest.fixture
def settings() -> SearchSettings:
    return SearchSettings(_env_file=None)


@pytest.fixture
def tables() -> IndexTables:
    return create_memory_tables()


@pytest.fixture
def animal_cards() -> list[Card]:
    return [
        Card(id="s1", front_text="Chat noir", back_text="Felin agile", deck_id="animals"),
        Card(id="s2", front_text="Chien rapide", back_text="Animal fidèle", deck_id="animals"),
        Card(id="s3", front_text="Chat tigré", back_text="Animal domestique", deck_id="pets"),
    ]


def make_cards(count: int, *, deck_id: str = "d1", front: str = "Banane", back: str = "Fruit") -> list[Card]:
    return [
        Card(id=f"c{i}", front_text=f"{front} {i}", back_text=f"{back} {i}", deck_id=deck_id) for i in range(count)
    ]


@pytest.fixture
def card_factory():
    return make_cards


@pytest.fixture
def card_source_factory():
    return StaticCardSource


@pytest.fixture
def counting_tables_factory():
    return counting_tables


@pytest.fixture
def yield_hook():
    return no_yield
