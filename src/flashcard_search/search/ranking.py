"""Query-time ranking over the index tables."""

from __future__ import annotations

from collections.abc import Sequence
import logging

from flashcard_search.domain.model import RankingMode, SearchOptions
from flashcard_search.observability.metrics import WORKER_FALLBACKS
from flashcard_search.observability.tracing import create_span
from flashcard_search.search.analyzers import tokenize
from flashcard_search.search.fuzzy import fuzzy_worker_factory, rank_by_trigram_jaccard
from flashcard_search.search.indexer import IndexBuilder
from flashcard_search.search.metrics import SearchTimer, get_search_history
from flashcard_search.search.stats import rank_by_score, tfidf_scores
from flashcard_search.search.workers import WorkerChannel, WorkerFactory, expect_ordered_ids


logger = logging.getLogger(__name__)


def _distinct(terms: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(terms))


class RankingEngine:
    """Answer queries in ``none``, ``tfidf`` or ``fuzzy`` mode.

    The fuzzy worker is started lazily on the first fuzzy query and kept for
    later ones. When it fails it is discarded and the query is answered locally;
    the next fuzzy query tries a fresh worker.
    """

    def __init__(self, builder: IndexBuilder, *, fuzzy_factory: WorkerFactory | None = None) -> None:
        self.builder = builder
        self.tables = builder.tables
        self.settings = builder.settings
        self._fuzzy_factory = fuzzy_factory or fuzzy_worker_factory(
            self.tables.search_trigrams,
            batch_size=self.settings.trigram_batch_size,
        )
        self._fuzzy_channel: WorkerChannel | None = None

    async def search(self, query: str, options: SearchOptions | None = None) -> list[str]:
        options = options or SearchOptions()
        terms = _distinct(tokenize(query, self.builder.analyzer))
        if not terms:
            return []

        if options.ranking is RankingMode.NONE:
            ordered = await self._union(terms)
        else:
            with create_span("search.query", attributes={"search.ranking": options.ranking.value}):
                with SearchTimer() as timer:
                    if options.ranking is RankingMode.FUZZY:
                        ordered = await self._fuzzy(terms)
                    else:
                        ordered = await self._tfidf(terms)
            get_search_history().record(timer.elapsed_ms, ranking=options.ranking.value)
            logger.debug(
                "Search %r (%s) returned %d cards in %.2fms",
                query,
                options.ranking.value,
                len(ordered),
                timer.elapsed_ms,
            )

        return self._restrict(ordered, options)

    def _restrict(self, ordered: list[str], options: SearchOptions) -> list[str]:
        if options.deck_id is not None:
            in_deck = set(self.builder.get_deck_card_ids(options.deck_id))
            ordered = [card_id for card_id in ordered if card_id in in_deck]
        if options.limit is not None:
            ordered = ordered[: options.limit]
        return ordered

    async def _union(self, terms: Sequence[str]) -> list[str]:
        seen: dict[str, None] = {}
        for term in terms:
            for row in await self.tables.search_index.where("term").equals(term).to_array():
                seen.setdefault(row.card_id, None)
        return list(seen)

    async def _tfidf(self, terms: Sequence[str]) -> list[str]:
        postings: dict[str, dict[str, int]] = {}
        doc_freqs: dict[str, int] = {}
        for term in terms:
            rows = await self.tables.search_index.where("term").equals(term).to_array()
            if not rows:
                continue
            by_card: dict[str, int] = {}
            for row in rows:
                by_card[row.card_id] = by_card.get(row.card_id, 0) + row.tf
            postings[term] = by_card
            stat = await self.tables.search_term_stats.where("term").equals(term).first()
            doc_freqs[term] = stat.doc_freq if stat is not None and stat.doc_freq > 0 else len(by_card)

        if not postings:
            return []
        total_docs = max(await self.builder.collection_size(), *doc_freqs.values())
        scores = tfidf_scores(postings, doc_freqs, total_docs)
        return rank_by_score(scores)

    async def _fuzzy(self, terms: Sequence[str]) -> list[str]:
        try:
            if self._fuzzy_channel is None:
                self._fuzzy_channel = self._fuzzy_factory()
            response = await self._fuzzy_channel.request({"terms": list(terms)})
            return expect_ordered_ids(response)
        except Exception as exc:
            # Factory errors and handler bugs degrade the same way as WorkerError
            logger.warning("Fuzzy worker failed, ranking locally: %s", exc)
            WORKER_FALLBACKS.labels(worker="fuzzy").inc()
            await self._drop_fuzzy_channel()
        return await rank_by_trigram_jaccard(
            terms,
            self.tables.search_trigrams,
            batch_size=self.settings.trigram_batch_size,
        )

    async def _drop_fuzzy_channel(self) -> None:
        channel, self._fuzzy_channel = self._fuzzy_channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception:  # pragma: no cover - best-effort shutdown
                logger.debug("Fuzzy worker close failed", exc_info=True)

    async def close(self) -> None:
        await self._drop_fuzzy_channel()
