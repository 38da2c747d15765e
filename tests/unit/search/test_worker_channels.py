"""Tests for worker channels, the worker pool and the tokenization job."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial

import pytest

from flashcard_search.search.workers import (
    ExecutorWorkerChannel,
    TaskWorkerChannel,
    WorkerError,
    WorkerPool,
    chunk_evenly,
    expect_entries,
    expect_ordered_ids,
    tokenize_cards_job,
)


CARDS_PAYLOAD = {
    "cards": [
        {"id": "c1", "front_text": "Chat noir", "back_text": "Chat agile"},
        {"id": "c2", "front_text": "Chien", "back_text": None},
    ]
}


def _failing_job(payload):
    raise RuntimeError("worker crashed")


class RecordingChannel:
    """Echo channel recording requests and close calls."""

    def __init__(self) -> None:
        self.requests = []
        self.closed = False

    async def request(self, payload):
        self.requests.append(payload)
        await asyncio.sleep(0)
        return {"echo": payload["n"]}

    async def close(self):
        self.closed = True


@pytest.mark.unit
class TestTokenizeCardsJob:
    def test_one_entry_per_occurrence(self):
        response = tokenize_cards_job(CARDS_PAYLOAD)

        assert response["entries"] == [
            {"term": "chat", "card_id": "c1"},
            {"term": "noir", "card_id": "c1"},
            {"term": "chat", "card_id": "c1"},
            {"term": "agile", "card_id": "c1"},
            {"term": "chien", "card_id": "c2"},
        ]

    def test_honours_term_bounds(self):
        response = tokenize_cards_job(CARDS_PAYLOAD, min_length=5, max_length=40)

        assert {e["term"] for e in response["entries"]} == {"chien", "agile"}

    def test_empty_payload(self):
        assert tokenize_cards_job({}) == {"entries": []}


@pytest.mark.unit
class TestResponseValidation:
    def test_expect_entries(self):
        assert expect_entries({"entries": [{"term": "chat", "card_id": "c1"}]}) == [("chat", "c1")]

    @pytest.mark.parametrize("response", [None, {}, {"entries": "nope"}, {"entries": [{"term": "chat"}]}, {"entries": [3]}])
    def test_expect_entries_rejects_malformed(self, response):
        with pytest.raises(WorkerError):
            expect_entries(response)

    def test_expect_ordered_ids(self):
        assert expect_ordered_ids({"ordered_ids": ["b", "a"]}) == ["b", "a"]

    @pytest.mark.parametrize("response", [None, [], {"ordered_ids": None}])
    def test_expect_ordered_ids_rejects_malformed(self, response):
        with pytest.raises(WorkerError):
            expect_ordered_ids(response)


@pytest.mark.unit
class TestExecutorWorkerChannel:
    @pytest.mark.asyncio
    async def test_runs_handler_in_injected_executor(self):
        with ThreadPoolExecutor(max_workers=1) as executor:
            channel = ExecutorWorkerChannel(tokenize_cards_job, executor=executor)
            response = await channel.request(CARDS_PAYLOAD)
            await channel.close()

        assert len(response["entries"]) == 5

    @pytest.mark.asyncio
    async def test_handler_failure_becomes_worker_error(self):
        with ThreadPoolExecutor(max_workers=1) as executor:
            channel = ExecutorWorkerChannel(_failing_job, executor=executor)
            with pytest.raises(WorkerError, match="worker crashed"):
                await channel.request(CARDS_PAYLOAD)

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(self):
        channel = ExecutorWorkerChannel(tokenize_cards_job, executor=ThreadPoolExecutor(max_workers=1))
        with pytest.raises(WorkerError, match="not serializable"):
            await channel.request({"cards": [object()]})

    @pytest.mark.asyncio
    async def test_default_process_executor(self):
        channel = ExecutorWorkerChannel(partial(tokenize_cards_job, min_length=2, max_length=40))
        try:
            response = await channel.request({"cards": [{"id": "c9", "front_text": "Chat tigré", "back_text": ""}]})
        finally:
            await channel.close()

        assert expect_entries(response) == [("chat", "c9"), ("tigre", "c9")]


@pytest.mark.unit
class TestTaskWorkerChannel:
    @pytest.mark.asyncio
    async def test_request_copies_messages(self):
        seen = []

        async def handler(payload):
            seen.append(payload)
            return {"ordered_ids": list(payload["terms"])}

        original = {"terms": ["chat"]}
        channel = TaskWorkerChannel(handler)
        response = await channel.request(original)

        assert response == {"ordered_ids": ["chat"]}
        assert seen[0] == original
        assert seen[0] is not original

    @pytest.mark.asyncio
    async def test_handler_error_wrapped(self):
        async def handler(payload):
            raise KeyError("terms")

        with pytest.raises(WorkerError):
            await TaskWorkerChannel(handler).request({})

    @pytest.mark.asyncio
    async def test_closed_channel_rejects_requests(self):
        async def handler(payload):
            return {}

        channel = TaskWorkerChannel(handler)
        await channel.close()
        with pytest.raises(WorkerError, match="closed"):
            await channel.request({})


@pytest.mark.unit
class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_runs_payloads_on_idle_channels(self):
        channels = []

        def factory():
            channel = RecordingChannel()
            channels.append(channel)
            return channel

        async with WorkerPool(factory, 2) as pool:
            responses = await asyncio.gather(*(pool.run({"n": n}) for n in range(5)))

        assert [r["echo"] for r in responses] == [0, 1, 2, 3, 4]
        assert len(channels) == 2
        assert sum(len(c.requests) for c in channels) == 5
        assert all(c.closed for c in channels)

    def test_factory_failure_becomes_worker_error(self):
        def factory():
            raise OSError("cannot spawn")

        with pytest.raises(WorkerError, match="cannot spawn"):
            WorkerPool(factory, 3)

    def test_size_floor(self):
        pool = WorkerPool(RecordingChannel, 0)
        assert pool.size == 1


@pytest.mark.unit
@pytest.mark.parametrize(
    ("count", "parts", "sizes"),
    [(10, 3, [4, 4, 2]), (2, 8, [1, 1]), (0, 4, []), (5, 1, [5])],
)
def test_chunk_evenly(count, parts, sizes):
    chunks = chunk_evenly(list(range(count)), parts)

    assert [len(c) for c in chunks] == sizes
    assert [item for chunk in chunks for item in chunk] == list(range(count))
