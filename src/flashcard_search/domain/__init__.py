"""Domain layer - value objects for cards, index rows and operation results.

Key principles:
1. No dependencies on infrastructure (no table drivers, no workers)
2. Type safety with Pydantic
3. Immutability for value objects
"""

from flashcard_search.domain.model import (
    Card,
    IndexEntry,
    PrimeResult,
    RankingMode,
    RebuildResult,
    SearchOptions,
    TermStat,
    TrigramEntry,
)


__all__ = [
    "Card",
    "IndexEntry",
    "PrimeResult",
    "RankingMode",
    "RebuildResult",
    "SearchOptions",
    "TermStat",
    "TrigramEntry",
]
