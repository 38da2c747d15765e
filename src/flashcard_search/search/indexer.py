"""Index builder and rebuild orchestration for card search.

The builder owns everything mutable about the index that is not persisted:
the per-card bloom map, the deck -> card ids map and the ``RebuildState``
used to de-duplicate concurrent full rebuilds. Postings, trigrams and term
statistics are written through the narrow ``IndexTable`` contract.

Full rebuilds come in three flavours:

* ``rebuild_all`` - shared: concurrent callers await the same task, so the
  tables are cleared once and the source is read once.
* ``rebuild_all_abortable`` - returns a handle whose ``abort()`` stops the pass
  at card granularity, leaving a partially rebuilt index in place.
* ``prime`` - indexes only the first N cards so a large, never-indexed
  collection becomes searchable quickly.

Shared and abortable passes hold one lock from clearing the tables to the last
write, so two passes never interleave their rows.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Generator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
import logging
import os
from typing import Any, Protocol

from flashcard_search.config import SearchSettings
from flashcard_search.domain.model import Card, IndexEntry, PrimeResult, RebuildResult, TermStat, TrigramEntry
from flashcard_search.observability.metrics import INDEXED_CARDS, REBUILD_COUNT, WORKER_FALLBACKS
from flashcard_search.observability.tracing import create_span
from flashcard_search.search.analyzers import CardTextAnalyzer, card_terms, fold_text, unique_trigrams
from flashcard_search.search.bloom_filter import CardBloomMap
from flashcard_search.search.storage import IndexTables
from flashcard_search.search.workers import (
    ExecutorWorkerChannel,
    WorkerError,
    WorkerFactory,
    WorkerPool,
    chunk_evenly,
    expect_entries,
    tokenize_cards_job,
)


logger = logging.getLogger(__name__)


class CardSource(Protocol):
    """Read-only access to the card collection."""

    async def get_all(self) -> Sequence[Card | Mapping[str, Any]]:  # pragma: no cover - interface definition
        ...


async def yield_to_loop() -> None:
    """Let the event loop run other work between units of indexing."""
    await asyncio.sleep(0)


class CancellationToken:
    """Cooperative cancellation flag checked between cards."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RebuildState:
    """Progress and de-duplication state owned by one builder."""

    in_progress: bool = False
    shared_task: asyncio.Task[RebuildResult] | None = None
    aborted: bool = False
    indexed_count: int = 0
    total_count: int = 0
    primed: bool = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "in_progress": self.in_progress,
            "aborted": self.aborted,
            "indexed_count": self.indexed_count,
            "total_count": self.total_count,
            "primed": self.primed,
        }


class AbortableRebuild:
    """Awaitable handle of an abortable rebuild."""

    def __init__(self, task: asyncio.Task[RebuildResult], token: CancellationToken) -> None:
        self._task = task
        self._token = token

    def abort(self) -> None:
        """Request the rebuild to stop after the card in flight."""
        self._token.cancel()

    @property
    def aborted(self) -> bool:
        return self._token.cancelled

    @property
    def task(self) -> asyncio.Task[RebuildResult]:
        return self._task

    def done(self) -> bool:
        return self._task.done()

    def __await__(self) -> Generator[Any, None, RebuildResult]:
        return self._task.__await__()


@dataclass
class _IndexBatch:
    """Rows staged for a group of cards before one bulk write."""

    entries: list[IndexEntry] = field(default_factory=list)
    trigrams: list[TrigramEntry] = field(default_factory=list)
    doc_freqs: Counter[str] = field(default_factory=Counter)
    card_count: int = 0


def as_card(raw: Card | Mapping[str, Any] | Any) -> Card:
    """Accept a ``Card``, a mapping, or any object exposing the card attributes."""
    if isinstance(raw, Card):
        return raw
    if isinstance(raw, Mapping):
        return Card.model_validate(raw)
    return Card.model_validate(raw, from_attributes=True)


def default_index_worker_factory(settings: SearchSettings) -> WorkerFactory:
    """Process-backed tokenization workers honouring the configured term bounds."""
    job = partial(
        tokenize_cards_job,
        min_length=settings.min_term_length,
        max_length=settings.max_term_length,
    )
    return partial(ExecutorWorkerChannel, job)


class IndexBuilder:
    """Coordinate per-card indexing and full rebuilds over the index tables."""

    def __init__(
        self,
        card_source: CardSource,
        tables: IndexTables,
        *,
        settings: SearchSettings | None = None,
        index_worker_factory: WorkerFactory | None = None,
        yield_control: Callable[[], Awaitable[None]] | None = None,
        cpu_count: int | None = None,
    ) -> None:
        self.card_source = card_source
        self.tables = tables
        self.settings = settings or SearchSettings()
        self.analyzer = CardTextAnalyzer(
            min_length=self.settings.min_term_length,
            max_length=self.settings.max_term_length,
        )
        self.bloom = CardBloomMap(self.settings.bloom_bits, self.settings.bloom_hashes)
        self.state = RebuildState()
        self._index_worker_factory = index_worker_factory or default_index_worker_factory(self.settings)
        self._yield = yield_control or yield_to_loop
        self._cpu_count = cpu_count or os.cpu_count() or 4
        self._deck_cards: dict[str, dict[str, None]] = {}
        self._card_decks: dict[str, str] = {}
        self._indexed_ids: set[str] = set()
        self._stored_card_count: int | None = None
        self._rebuild_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # In-memory side structures
    # ------------------------------------------------------------------

    @property
    def indexed_card_count(self) -> int:
        """Cards indexed by this builder since it was created or last rebuilt."""
        return len(self._indexed_ids)

    async def collection_size(self) -> int:
        """Cards known to the index, including postings written by an earlier process."""
        if self._stored_card_count is None:
            self._stored_card_count = await self.tables.search_index.count_distinct("card_id")
        return max(self.indexed_card_count, self._stored_card_count)

    def get_deck_card_ids(self, deck_id: str) -> list[str]:
        """Card ids of ``deck_id`` observed while indexing, in first-seen order."""
        return list(self._deck_cards.get(deck_id, ()))

    def may_contain_term(self, card_id: str, term: str) -> bool:
        return self.bloom.may_contain(card_id, fold_text(term))

    def _remember(self, card: Card, terms: Iterable[str]) -> None:
        self.bloom.reset(card.id)
        self.bloom.add_terms(card.id, set(terms))
        previous_deck = self._card_decks.get(card.id)
        if previous_deck is not None and previous_deck != card.deck_id:
            self._deck_cards.get(previous_deck, {}).pop(card.id, None)
        self._card_decks[card.id] = card.deck_id
        self._deck_cards.setdefault(card.deck_id, {})[card.id] = None
        self._indexed_ids.add(card.id)

    def _forget(self, card_id: str) -> None:
        self.bloom.discard(card_id)
        deck_id = self._card_decks.pop(card_id, None)
        if deck_id is not None:
            self._deck_cards.get(deck_id, {}).pop(card_id, None)
        self._indexed_ids.discard(card_id)

    def _reset_memory(self) -> None:
        self.bloom.clear()
        self._deck_cards.clear()
        self._card_decks.clear()
        self._indexed_ids.clear()

    # ------------------------------------------------------------------
    # Per-card indexing
    # ------------------------------------------------------------------

    def _card_rows(self, card: Card, term_counts: Counter[str]) -> tuple[list[IndexEntry], list[TrigramEntry]]:
        entries = [IndexEntry(term=term, card_id=card.id, tf=count) for term, count in term_counts.items()]
        trigram_rows = [TrigramEntry(tri=tri, card_id=card.id) for tri in unique_trigrams(term_counts)]
        return entries, trigram_rows

    async def _adjust_doc_freq(self, term: str, delta: int) -> None:
        stats = self.tables.search_term_stats
        current = await stats.where("term").equals(term).first()
        if current is None:
            if delta > 0:
                await stats.add(TermStat(term=term, doc_freq=delta))
            return
        updated = current.doc_freq + delta
        if updated <= 0:
            await stats.where("term").equals(term).delete()
        else:
            await stats.put(TermStat(term=term, doc_freq=updated))

    async def _purge_card(self, card_id: str) -> set[str]:
        """Delete a card's postings and trigrams; return the terms it had."""
        previous = await self.tables.search_index.where("card_id").equals(card_id).to_array()
        await self.tables.search_index.where("card_id").equals(card_id).delete()
        await self.tables.search_trigrams.where("card_id").equals(card_id).delete()
        self._stored_card_count = None
        return {row.term for row in previous}

    async def index_card(self, raw_card: Card | Mapping[str, Any]) -> int:
        """Replace the postings of one card; returns the number of distinct terms written.

        Purge happens strictly before the new rows are written so a concurrent
        query never sees stale and fresh postings of the same card together.
        """
        card = as_card(raw_card)
        old_terms = await self._purge_card(card.id)

        term_counts = Counter(card_terms(card.front_text, card.back_text, self.analyzer))
        entries, trigram_rows = self._card_rows(card, term_counts)
        if entries:
            await self.tables.search_index.bulk_add(entries)
        if trigram_rows:
            await self.tables.search_trigrams.bulk_add(trigram_rows)
        self._stored_card_count = None

        new_terms = set(term_counts)
        for term in sorted(old_terms - new_terms):
            await self._adjust_doc_freq(term, -1)
        for term in sorted(new_terms - old_terms):
            await self._adjust_doc_freq(term, 1)

        self._remember(card, new_terms)
        INDEXED_CARDS.labels().set(self.indexed_card_count)
        logger.debug("Indexed card %s (%d terms, %d trigrams)", card.id, len(entries), len(trigram_rows))
        return len(entries)

    async def remove_card(self, card_id: str) -> bool:
        """Drop every posting of ``card_id``; returns False when nothing was indexed."""
        old_terms = await self._purge_card(card_id)
        for term in sorted(old_terms):
            await self._adjust_doc_freq(term, -1)
        known = card_id in self._indexed_ids
        self._forget(card_id)
        INDEXED_CARDS.labels().set(self.indexed_card_count)
        return bool(old_terms) or known

    # ------------------------------------------------------------------
    # Full rebuilds
    # ------------------------------------------------------------------

    async def _start_rebuild(self) -> list[Card]:
        for table in self.tables.all():
            await table.clear()
        self._stored_card_count = None
        self._reset_memory()
        cards = [as_card(raw) for raw in await self.card_source.get_all()]
        self.state.indexed_count = 0
        self.state.total_count = len(cards)
        return cards

    def _stage(self, batch: _IndexBatch, card: Card, term_counts: Counter[str]) -> None:
        entries, trigram_rows = self._card_rows(card, term_counts)
        batch.entries.extend(entries)
        batch.trigrams.extend(trigram_rows)
        batch.doc_freqs.update(term_counts.keys())
        batch.card_count += 1
        self._remember(card, term_counts)

    async def _write_postings(self, batch: _IndexBatch) -> None:
        if batch.entries:
            await self.tables.search_index.bulk_add(batch.entries)
        if batch.trigrams:
            await self.tables.search_trigrams.bulk_add(batch.trigrams)
        self._stored_card_count = None

    async def _write_term_stats(self, doc_freqs: Counter[str]) -> None:
        if doc_freqs:
            await self.tables.search_term_stats.bulk_add(
                [TermStat(term=term, doc_freq=count) for term, count in doc_freqs.items()]
            )

    async def _index_sequential(self, cards: Sequence[Card], token: CancellationToken | None) -> RebuildResult:
        chunk_size = self.settings.rebuild_chunk_size
        doc_freqs: Counter[str] = Counter()
        indexed = entries = trigram_count = 0
        aborted = False

        for start in range(0, len(cards), chunk_size):
            batch = _IndexBatch()
            for card in cards[start : start + chunk_size]:
                if token is not None and token.cancelled:
                    aborted = True
                    break
                self._stage(batch, card, Counter(card_terms(card.front_text, card.back_text, self.analyzer)))

            await self._write_postings(batch)
            doc_freqs.update(batch.doc_freqs)
            indexed += batch.card_count
            entries += len(batch.entries)
            trigram_count += len(batch.trigrams)
            self.state.indexed_count = indexed
            if aborted:
                break
            await self._yield()

        if token is not None and token.cancelled and indexed < len(cards):
            aborted = True

        await self._write_term_stats(doc_freqs)
        INDEXED_CARDS.labels().set(self.indexed_card_count)
        return RebuildResult(
            indexed_cards=indexed,
            parallel=False,
            entries=entries,
            trigrams=trigram_count,
            aborted=aborted,
        )

    async def _collect_worker_terms(self, cards: Sequence[Card], threads: int) -> dict[str, Counter[str]]:
        payloads = [
            {"cards": [{"id": c.id, "front_text": c.front_text, "back_text": c.back_text} for c in chunk]}
            for chunk in chunk_evenly(cards, threads)
        ]
        pool = WorkerPool(self._index_worker_factory, min(threads, len(payloads)))
        try:
            responses = await asyncio.gather(*(pool.run(payload) for payload in payloads))
        finally:
            await pool.terminate()

        known_ids = {card.id for card in cards}
        per_card: dict[str, Counter[str]] = {}
        for response in responses:
            for term, card_id in expect_entries(response):
                if card_id not in known_ids:
                    raise WorkerError(f"Indexing worker returned unknown card id {card_id!r}")
                per_card.setdefault(card_id, Counter())[term] += 1
        return per_card

    async def _index_parallel(self, cards: Sequence[Card]) -> RebuildResult | None:
        """Worker-assisted rebuild; returns None when the workers cannot be used."""
        threads = max(1, min(self._cpu_count, self.settings.max_index_workers))
        try:
            per_card = await self._collect_worker_terms(cards, threads)
        except WorkerError as exc:
            logger.warning("Parallel tokenization failed, falling back to sequential rebuild: %s", exc)
            WORKER_FALLBACKS.labels(worker="indexing").inc()
            return None

        batch = _IndexBatch()
        for position, card in enumerate(cards, start=1):
            self._stage(batch, card, per_card.get(card.id, Counter()))
            if position % self.settings.rebuild_chunk_size == 0:
                await self._yield()
        await self._write_postings(batch)
        await self._write_term_stats(batch.doc_freqs)
        self.state.indexed_count = batch.card_count
        INDEXED_CARDS.labels().set(self.indexed_card_count)
        return RebuildResult(
            indexed_cards=batch.card_count,
            parallel=True,
            entries=len(batch.entries),
            trigrams=len(batch.trigrams),
            threads=threads,
        )

    async def _run_shared_rebuild(self) -> RebuildResult:
        async with self._rebuild_lock:
            return await self._shared_pass()

    async def _shared_pass(self) -> RebuildResult:
        with create_span("search.rebuild_all", attributes={"rebuild.mode": "shared"}):
            self.state.in_progress = True
            self.state.aborted = False
            try:
                cards = await self._start_rebuild()
                logger.info("Rebuilding search index for %d cards", len(cards))
                result = None
                if len(cards) >= self.settings.parallel_threshold:
                    result = await self._index_parallel(cards)
                if result is None:
                    result = await self._index_sequential(cards, token=None)
            except Exception:
                REBUILD_COUNT.labels(mode="shared", outcome="failed").inc()
                logger.exception("Search index rebuild failed")
                raise
            finally:
                self.state.in_progress = False
            REBUILD_COUNT.labels(mode="shared", outcome="completed").inc()
            logger.info(
                "Search index rebuilt: %d cards, %d entries, %d trigrams (parallel=%s)",
                result.indexed_cards,
                result.entries,
                result.trigrams,
                result.parallel,
            )
            return result

    def _release_shared_task(self, task: asyncio.Task[RebuildResult]) -> None:
        if self.state.shared_task is task:
            self.state.shared_task = None
        if not task.cancelled():
            # Callers awaiting the task receive the exception; mark it retrieved.
            task.exception()

    async def rebuild_all(self) -> RebuildResult:
        """Clear and re-index every card; concurrent callers share one pass."""
        task = self.state.shared_task
        if task is None:
            task = asyncio.ensure_future(self._run_shared_rebuild())
            self.state.shared_task = task
            task.add_done_callback(self._release_shared_task)
        else:
            logger.debug("Joining search index rebuild already in progress")
        return await asyncio.shield(task)

    async def _run_abortable_rebuild(self, token: CancellationToken) -> RebuildResult:
        shared = self.state.shared_task
        if shared is not None:
            await asyncio.wait([shared])
        async with self._rebuild_lock:
            return await self._abortable_pass(token)

    async def _abortable_pass(self, token: CancellationToken) -> RebuildResult:
        with create_span("search.rebuild_all", attributes={"rebuild.mode": "abortable"}):
            self.state.in_progress = True
            self.state.aborted = False
            try:
                cards = await self._start_rebuild()
                result = await self._index_sequential(cards, token=token)
            except Exception:
                REBUILD_COUNT.labels(mode="abortable", outcome="failed").inc()
                logger.exception("Abortable search index rebuild failed")
                raise
            finally:
                self.state.in_progress = False

            self.state.aborted = result.aborted
            outcome = "aborted" if result.aborted else "completed"
            REBUILD_COUNT.labels(mode="abortable", outcome=outcome).inc()
            if result.aborted:
                logger.info("Search index rebuild aborted after %d of %d cards", result.indexed_cards, len(cards))
            return result

    def rebuild_all_abortable(self) -> AbortableRebuild:
        """Start a rebuild that can be stopped with ``abort()`` on the returned handle.

        Must be called from a running event loop.
        """
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(self._run_abortable_rebuild(token))
        return AbortableRebuild(task, token)

    # ------------------------------------------------------------------
    # Priming
    # ------------------------------------------------------------------

    def is_primed(self) -> bool:
        return self.state.primed

    async def prime(self, batch_size: int, token: CancellationToken | None = None) -> PrimeResult:
        """Index the first ``batch_size`` cards so search works before a full rebuild."""
        if token is not None and token.cancelled:
            return PrimeResult(indexed_cards=0, primed=False)

        cards = list(await self.card_source.get_all())[: max(0, batch_size)]
        indexed = 0
        if not self.state.in_progress:
            self.state.indexed_count = 0
            self.state.total_count = len(cards)
        with create_span("search.prime", attributes={"prime.batch_size": batch_size}):
            for raw_card in cards:
                if token is not None and token.cancelled:
                    logger.info("Search index priming cancelled after %d cards", indexed)
                    return PrimeResult(indexed_cards=indexed, primed=False)
                await self.index_card(raw_card)
                indexed += 1
                if not self.state.in_progress:
                    self.state.indexed_count = indexed
                await self._yield()

        self.state.primed = True
        logger.info("Search index primed with %d cards", indexed)
        return PrimeResult(indexed_cards=indexed, primed=True)
