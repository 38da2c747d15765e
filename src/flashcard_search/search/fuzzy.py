"""Trigram-based fuzzy ranking for typo-tolerant search.

Query terms are broken into padded trigrams; cards sharing trigrams with the
query are ranked by Jaccard similarity between the query's trigram set and the
card's trigram set. The same coroutine backs the fuzzy worker and the local
fallback, so both produce identical orderings.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Sequence
from functools import partial
import logging

from flashcard_search.domain.model import TrigramEntry
from flashcard_search.search.analyzers import unique_trigrams
from flashcard_search.search.stats import jaccard_similarity, rank_by_score
from flashcard_search.search.storage import IndexTable
from flashcard_search.search.workers import Payload, Response, TaskWorkerChannel, WorkerChannel


logger = logging.getLogger(__name__)

DEFAULT_TRIGRAM_BATCH_SIZE = 120


def _batches(items: Sequence[str], size: int) -> list[Sequence[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _count_card_trigrams(
    trigram_table: IndexTable[TrigramEntry],
    card_ids: Sequence[str],
    batch_size: int,
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for batch in _batches(card_ids, batch_size):
        counts.update(await trigram_table.count_by("card_id", batch))
    return counts


async def rank_by_trigram_jaccard(
    terms: Sequence[str],
    trigram_table: IndexTable[TrigramEntry],
    *,
    batch_size: int = DEFAULT_TRIGRAM_BATCH_SIZE,
) -> list[str]:
    """Rank cards by trigram Jaccard similarity to the query terms.

    Args:
        terms: Already-tokenized query terms.
        trigram_table: Table of ``TrigramEntry`` rows.
        batch_size: Maximum trigram lookups issued together.

    Returns:
        Card ids ordered by descending similarity, ties broken by id.
    """
    query_trigrams = unique_trigrams(terms)
    if not query_trigrams:
        return []

    overlap: Counter[str] = Counter()
    for batch in _batches(query_trigrams, batch_size):
        results = await asyncio.gather(*(trigram_table.where("tri").equals(tri).to_array() for tri in batch))
        for rows in results:
            overlap.update(row.card_id for row in rows)
        await asyncio.sleep(0)

    if not overlap:
        return []

    card_sizes = await _count_card_trigrams(trigram_table, list(overlap), batch_size)
    scores = {
        card_id: jaccard_similarity(shared, len(query_trigrams), card_sizes.get(card_id) or shared)
        for card_id, shared in overlap.items()
    }
    return rank_by_score(scores)


async def fuzzy_worker_handler(
    payload: Payload,
    *,
    trigram_table: IndexTable[TrigramEntry],
    batch_size: int = DEFAULT_TRIGRAM_BATCH_SIZE,
) -> Response:
    """Worker entry point: ``{"terms": [...]}`` -> ``{"ordered_ids": [...]}``."""

    terms = [str(term) for term in payload.get("terms") or []]
    ordered_ids = await rank_by_trigram_jaccard(terms, trigram_table, batch_size=batch_size)
    return {"ordered_ids": ordered_ids}


def fuzzy_worker_factory(
    trigram_table: IndexTable[TrigramEntry],
    *,
    batch_size: int = DEFAULT_TRIGRAM_BATCH_SIZE,
):
    """Factory producing task-backed fuzzy ranking workers over ``trigram_table``."""

    def factory() -> WorkerChannel:
        return TaskWorkerChannel(partial(fuzzy_worker_handler, trigram_table=trigram_table, batch_size=batch_size))

    return factory
