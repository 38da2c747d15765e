"""Request/response worker channels used to offload tokenization and fuzzy ranking.

A channel takes a plain-dict payload and returns a plain-dict response; nothing
is shared with the caller. Every failure (worker cannot start, handler raises,
response malformed) surfaces as ``WorkerError`` so callers can fall back to the
equivalent local computation.

Message contracts:

* indexing: ``{"cards": [{"id", "front_text", "back_text"}, ...]}`` ->
  ``{"entries": [{"term", "card_id"}, ...]}``
* fuzzy ranking: ``{"terms": [...]}`` -> ``{"ordered_ids": [...]}``
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from concurrent.futures import Executor, ProcessPoolExecutor
import logging
from typing import Any, Protocol

import orjson

from flashcard_search.search.analyzers import (
    DEFAULT_MAX_TERM_LENGTH,
    DEFAULT_MIN_TERM_LENGTH,
    CardTextAnalyzer,
    card_terms,
)


logger = logging.getLogger(__name__)

Payload = Mapping[str, Any]
Response = dict[str, Any]


class WorkerError(RuntimeError):
    """Raised when a worker cannot be started, fails, or answers malformed data."""


class WorkerChannel(Protocol):
    """Request/response channel to one worker."""

    async def request(self, payload: Payload) -> Response:  # pragma: no cover - interface definition
        ...

    async def close(self) -> None:  # pragma: no cover - interface definition
        ...


WorkerFactory = Callable[[], WorkerChannel]


def _copy_message(message: Payload) -> Response:
    """Serialize a message the way it would cross a process boundary."""
    try:
        return orjson.loads(orjson.dumps(message))
    except (TypeError, orjson.JSONEncodeError) as exc:
        raise WorkerError(f"Message is not serializable: {exc}") from exc


class ExecutorWorkerChannel:
    """Runs a synchronous handler in a ``concurrent.futures`` executor.

    By default each channel owns a single-process ``ProcessPoolExecutor``; a
    shared executor can be injected instead (it is then not shut down on close).
    """

    def __init__(self, handler: Callable[[Payload], Response], executor: Executor | None = None) -> None:
        self._handler = handler
        self._owns_executor = executor is None
        self._executor: Executor | None = executor

    async def request(self, payload: Payload) -> Response:
        message = _copy_message(payload)
        loop = asyncio.get_running_loop()
        try:
            if self._executor is None:
                self._executor = ProcessPoolExecutor(max_workers=1)
            response = await loop.run_in_executor(self._executor, self._handler, message)
        except Exception as exc:
            raise WorkerError(f"Worker failed: {exc}") from exc
        return _copy_message(response)

    async def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._executor = None


class TaskWorkerChannel:
    """Runs an async handler as a separate asyncio task behind the channel interface."""

    def __init__(self, handler: Callable[[Payload], Awaitable[Response]]) -> None:
        self._handler = handler
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    async def request(self, payload: Payload) -> Response:
        if self._closed:
            raise WorkerError("Worker channel is closed")
        message = _copy_message(payload)
        task = asyncio.create_task(self._handler(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        try:
            response = await task
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise WorkerError(f"Worker failed: {exc}") from exc
        return _copy_message(response)

    async def close(self) -> None:
        self._closed = True
        for task in list(self._pending):
            task.cancel()


class WorkerPool:
    """Fixed set of channels; each payload runs on the next idle channel."""

    def __init__(self, factory: WorkerFactory, size: int) -> None:
        self.size = max(1, size)
        self._channels: list[WorkerChannel] = []
        try:
            for _ in range(self.size):
                self._channels.append(factory())
        except Exception as exc:
            raise WorkerError(f"Failed to start worker: {exc}") from exc
        self._idle: asyncio.Queue[WorkerChannel] = asyncio.Queue()
        for channel in self._channels:
            self._idle.put_nowait(channel)

    async def run(self, payload: Payload) -> Response:
        channel = await self._idle.get()
        try:
            return await channel.request(payload)
        finally:
            self._idle.put_nowait(channel)

    async def terminate(self) -> None:
        for channel in self._channels:
            try:
                await channel.close()
            except Exception:  # pragma: no cover - best-effort shutdown
                logger.debug("Worker close failed", exc_info=True)
        self._channels = []

    async def __aenter__(self) -> WorkerPool:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.terminate()


def tokenize_cards_job(
    payload: Payload,
    *,
    min_length: int = DEFAULT_MIN_TERM_LENGTH,
    max_length: int = DEFAULT_MAX_TERM_LENGTH,
) -> Response:
    """Worker job: one ``{"term", "card_id"}`` entry per term occurrence."""

    analyzer = CardTextAnalyzer(min_length=min_length, max_length=max_length)
    entries: list[dict[str, str]] = []
    for card in payload.get("cards") or []:
        card_id = card["id"]
        for term in card_terms(card.get("front_text"), card.get("back_text"), analyzer):
            entries.append({"term": term, "card_id": card_id})
    return {"entries": entries}


def expect_entries(response: Any) -> list[tuple[str, str]]:
    """Validate an indexing response and return ``(term, card_id)`` pairs."""

    entries = response.get("entries") if isinstance(response, Mapping) else None
    if not isinstance(entries, list):
        raise WorkerError("Indexing worker response has no 'entries' list")
    pairs: list[tuple[str, str]] = []
    for entry in entries:
        try:
            pairs.append((str(entry["term"]), str(entry["card_id"])))
        except (KeyError, TypeError) as exc:
            raise WorkerError(f"Malformed indexing entry: {entry!r}") from exc
    return pairs


def expect_ordered_ids(response: Any) -> list[str]:
    """Validate a fuzzy-ranking response and return the ordered card ids."""

    ordered = response.get("ordered_ids") if isinstance(response, Mapping) else None
    if not isinstance(ordered, list):
        raise WorkerError("Fuzzy worker response has no 'ordered_ids' list")
    return [str(card_id) for card_id in ordered]


def chunk_evenly(items: Sequence[Any], parts: int) -> list[Sequence[Any]]:
    """Split ``items`` into at most ``parts`` contiguous chunks."""

    if not items:
        return []
    size = -(-len(items) // max(1, parts))
    return [items[i : i + size] for i in range(0, len(items), size)]
