"""Search index service - the single entry point used by the application.

The service routes calls to one ``IndexBuilder`` (and therefore one
``RebuildState``) and one ``RankingEngine``; it holds no logic of its own
beyond wiring. Use ``SearchIndexService.from_settings`` to get a fully wired
instance over in-memory or SQLite tables.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
import logging
from pathlib import Path
from typing import Any

from flashcard_search.config import SearchSettings
from flashcard_search.domain.model import Card, PrimeResult, RankingMode, RebuildResult, SearchOptions
from flashcard_search.observability.logging import configure_logging
from flashcard_search.observability.metrics import get_metrics, init_metrics
from flashcard_search.observability.tracing import init_tracing
from flashcard_search.search.indexer import AbortableRebuild, CancellationToken, CardSource, IndexBuilder
from flashcard_search.search.metrics import configure_search_history, get_search_history
from flashcard_search.search.ranking import RankingEngine
from flashcard_search.search.sqlite_storage import SqliteIndexStore
from flashcard_search.search.storage import IndexTables, create_memory_tables
from flashcard_search.search.workers import WorkerFactory


logger = logging.getLogger(__name__)


class SearchIndexService:
    """Facade over indexing, rebuild orchestration and ranking."""

    def __init__(
        self,
        card_source: CardSource,
        tables: IndexTables,
        *,
        settings: SearchSettings | None = None,
        index_worker_factory: WorkerFactory | None = None,
        fuzzy_worker_factory: WorkerFactory | None = None,
        yield_control: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.settings = settings or SearchSettings()
        self.builder = IndexBuilder(
            card_source,
            tables,
            settings=self.settings,
            index_worker_factory=index_worker_factory,
            yield_control=yield_control,
        )
        self.ranking = RankingEngine(self.builder, fuzzy_factory=fuzzy_worker_factory)
        self._store: SqliteIndexStore | None = None

    @classmethod
    def from_settings(
        cls,
        card_source: CardSource,
        settings: SearchSettings | None = None,
        *,
        db_path: Path | str | None = None,
        setup_logging: bool = False,
    ) -> SearchIndexService:
        """Wire tables, workers and diagnostics from settings.

        Tables live in memory unless ``db_path`` is given, in which case they
        are stored in SQLite (``":memory:"`` is accepted for a throwaway DB).
        ``setup_logging`` attaches a handler to the ``flashcard_search`` logger
        from ``log_level`` and ``log_json``; embedding applications usually
        leave it off. With ``telemetry_enabled`` the OpenTelemetry SDK tracer
        and meter providers are installed under ``service_name``.
        """
        settings = settings or SearchSettings()
        if setup_logging:
            configure_logging(settings.log_level, settings.log_json)
        if settings.telemetry_enabled:
            init_tracing(settings.service_name)
            init_metrics(settings.service_name)
        configure_search_history(settings.latency_history_size)
        store = SqliteIndexStore(db_path) if db_path is not None else None
        tables = store.tables() if store is not None else create_memory_tables()
        service = cls(card_source, tables, settings=settings)
        service._store = store
        logger.debug("Search index service ready (storage=%s)", "sqlite" if store else "memory")
        return service

    @property
    def tables(self) -> IndexTables:
        return self.builder.tables

    async def index_card(self, card: Card | Mapping[str, Any]) -> int:
        return await self.builder.index_card(card)

    async def remove_card(self, card_id: str) -> bool:
        return await self.builder.remove_card(card_id)

    async def rebuild_all(self) -> RebuildResult:
        return await self.builder.rebuild_all()

    def rebuild_all_abortable(self) -> AbortableRebuild:
        return self.builder.rebuild_all_abortable()

    async def prime(self, batch_size: int, token: CancellationToken | None = None) -> PrimeResult:
        return await self.builder.prime(batch_size, token)

    def is_primed(self) -> bool:
        return self.builder.is_primed()

    async def search(
        self,
        query: str,
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Card ids matching ``query``; ``options`` may be a mapping such as ``{"ranking": "fuzzy"}``."""
        if options is not None and not isinstance(options, SearchOptions):
            options = SearchOptions.model_validate(options)
        return await self.ranking.search(query, options)

    def get_deck_card_ids(self, deck_id: str) -> list[str]:
        return self.builder.get_deck_card_ids(deck_id)

    def may_contain_term(self, card_id: str, term: str) -> bool:
        return self.builder.may_contain_term(card_id, term)

    def get_search_stats(self) -> dict[str, Any]:
        """Latency percentiles plus index and bloom-map sizes."""
        return {
            "latency": get_search_history().get_stats(),
            "indexed_cards": self.builder.indexed_card_count,
            "bloom": self.builder.bloom.stats(),
            "rebuild": self.rebuild_state,
            "rankings": [mode.value for mode in RankingMode],
        }

    @property
    def rebuild_state(self) -> dict[str, Any]:
        return self.builder.state.snapshot()

    def export_metrics(self) -> bytes:
        """Prometheus text exposition for the host application to serve."""
        return get_metrics()

    async def close(self) -> None:
        """Stop the fuzzy worker and release the SQLite connection, if any."""
        await self.ranking.close()
        if self._store is not None:
            self._store.close()
            self._store = None
