"""Full-text search over flashcards: term index, TF-IDF and trigram fuzzy ranking."""

from flashcard_search.config import SearchSettings, get_settings
from flashcard_search.domain.model import (
    Card,
    PrimeResult,
    RankingMode,
    RebuildResult,
    SearchOptions,
)
from flashcard_search.search.indexer import AbortableRebuild, CancellationToken
from flashcard_search.service_layer.search_index_service import SearchIndexService


__all__ = [
    "AbortableRebuild",
    "CancellationToken",
    "Card",
    "PrimeResult",
    "RankingMode",
    "RebuildResult",
    "SearchIndexService",
    "SearchOptions",
    "SearchSettings",
    "get_settings",
]
