"""Statistical helpers for lexical and trigram scoring.

The functions here stay independent of any storage backend so they can be
reused by the ranking engine and by the fuzzy-ranking worker.
"""

from __future__ import annotations

from collections.abc import Mapping
import math


def calculate_idf(doc_freq: int, total_docs: int) -> float:
    """Return ``log(total_docs / doc_freq)`` without smoothing.

    ``total_docs`` is floored at ``doc_freq`` so the IDF never goes negative
    when the card count is stale (e.g. a partially primed index).
    """

    if doc_freq <= 0:
        return 0.0
    return math.log(max(total_docs, doc_freq) / doc_freq)


def tfidf_scores(
    term_postings: Mapping[str, Mapping[str, int]],
    doc_freqs: Mapping[str, int],
    total_docs: int,
) -> dict[str, float]:
    """Sum ``tf * idf`` over query terms for every candidate card.

    Args:
        term_postings: term -> (card id -> term frequency in that card).
        doc_freqs: term -> number of cards containing the term.
        total_docs: number of cards in the collection.
    """

    scores: dict[str, float] = {}
    for term, postings in term_postings.items():
        idf = calculate_idf(doc_freqs.get(term, len(postings)), total_docs)
        for card_id, tf in postings.items():
            scores[card_id] = scores.get(card_id, 0.0) + tf * idf
    return scores


def jaccard_similarity(overlap: int, query_size: int, candidate_size: int) -> float:
    """Jaccard index of two sets given their sizes and intersection size."""

    union = query_size + candidate_size - overlap
    if union <= 0:
        return 0.0
    return overlap / union


def rank_by_score(scores: Mapping[str, float]) -> list[str]:
    """Order ids by descending score, ties broken by id."""

    return [card_id for card_id, _ in sorted(scores.items(), key=lambda item: (-item[1], item[0]))]
