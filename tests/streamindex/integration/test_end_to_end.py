"""Delivery guarantees of the indexer over an in-memory log and index."""

import asyncio
import json
from itertools import permutations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config.config import FeedConfig
from streamindex.indexer.worker import BatchIndexer
from streamindex.relay.worker import ChangeFeedRelay

INDEX = "wikimedia"
TOPIC = "wikimedia_recentchange"


def _event(event_id, **fields):
    return json.dumps({"meta": {"id": event_id}, **fields})


async def _start_indexer(change_log, search_index, **processing):
    processing.setdefault("failure_backoff_seconds", 0)
    indexer = BatchIndexer(
        change_log.consumer(),
        search_index,
        INDEX,
        processing_config=processing,
        worker_id="indexer-e2e",
    )
    await indexer.start()
    return indexer


class TestIdempotentUpsert:

    async def test_same_event_twice_yields_one_document(self, change_log, search_index):
        change_log.append(_event("X1", title="Main Page"))
        change_log.append(_event("X1", title="Main Page"))
        indexer = await _start_indexer(change_log, search_index)

        await indexer.run_cycle()

        assert search_index.documents() == {"X1": {"meta": {"id": "X1"}, "title": "Main Page"}}
        assert search_index.upserts == ["X1", "X1"]
        await indexer.stop()


class TestCommitAfterIndex:

    async def test_commit_follows_successful_upserts(self, change_log, search_index):
        for n in range(3):
            change_log.append(_event(f"E{n}"))
        indexer = await _start_indexer(change_log, search_index)

        await indexer.run_cycle()

        assert search_index.upserts == ["E0", "E1", "E2"]
        assert change_log.committed == {0: 3}
        await indexer.stop()

    async def test_crash_before_commit_reindexes_range(self, change_log, search_index):
        change_log.append(_event("A", v=1))
        change_log.append(_event("B", v=1))

        # Crash: the first indexer indexes the batch but dies before committing
        crashed = change_log.consumer()
        await crashed.start()
        batch = await crashed.poll(100)
        for message in batch:
            await search_index.upsert(INDEX, json.loads(message.value)["meta"]["id"], message.value)
        assert change_log.committed == {0: 0}

        indexer = await _start_indexer(change_log, search_index)
        report = await indexer.run_cycle()

        assert [m.offset for m in report.messages] == [0, 1]
        assert search_index.upserts == ["A", "B", "A", "B"]
        assert len(search_index.documents()) == 2
        assert change_log.committed == {0: 2}
        await indexer.stop()

    async def test_failed_upsert_leaves_cursor_and_redelivers(self, change_log, search_index):
        change_log.append(_event("A"))
        change_log.append(_event("B"))
        search_index.fail_ids.add("B")
        indexer = await _start_indexer(change_log, search_index)

        first = await indexer.run_cycle()
        assert first.is_failure
        assert change_log.committed == {0: 0}

        search_index.fail_ids.clear()
        second = await indexer.run_cycle()

        assert [m.offset for m in second.messages] == [0, 1]
        assert change_log.committed == {0: 2}
        assert set(search_index.documents()) == {"A", "B"}
        await indexer.stop()

    async def test_stop_does_not_commit(self, change_log, search_index):
        change_log.append(_event("A"))
        indexer = await _start_indexer(change_log, search_index)

        await indexer.stop()

        assert change_log.commit_calls == []
        assert search_index.closed


class TestPerRecordIsolation:

    async def test_malformed_event_does_not_block_batch(self, change_log, search_index):
        change_log.append(_event("A"))
        change_log.append('{"title": "no identity"}')
        change_log.append("{broken")
        change_log.append(_event("B"))
        indexer = await _start_indexer(change_log, search_index)

        report = await indexer.run_cycle()

        assert set(search_index.documents()) == {"A", "B"}
        assert report.skipped == 2
        assert change_log.committed == {0: 4}
        await indexer.stop()


class TestIndexCreationIdempotence:

    async def test_restart_keeps_existing_documents(self, change_log, search_index):
        change_log.append(_event("A"))
        first = await _start_indexer(change_log, search_index)
        await first.run_cycle()
        await first.stop()

        second = await _start_indexer(change_log, search_index)

        assert search_index.create_calls == 1
        assert set(search_index.documents()) == {"A"}
        await second.stop()


class TestPartitionOrdering:

    @pytest.mark.parametrize("versions", list(permutations([1, 2, 3])))
    async def test_last_offset_wins(self, change_log, search_index, versions):
        for v in versions:
            change_log.append(_event("X1", v=v))
        indexer = await _start_indexer(change_log, search_index)

        await indexer.run_cycle()

        assert search_index.documents()["X1"]["v"] == versions[-1]
        await indexer.stop()

    async def test_order_holds_across_batches(self, change_log, search_index):
        for v in range(1, 6):
            change_log.append(_event("X1", v=v))
        indexer = await _start_indexer(change_log, search_index, batch_size=2)

        for _ in range(3):
            await indexer.run_cycle()

        assert search_index.documents()["X1"]["v"] == 5
        assert change_log.committed == {0: 5}
        await indexer.stop()


class TestFeedToIndex:

    async def test_relay_then_indexer_keeps_latest_version(self, change_log, search_index):
        connections = []

        async def stream(request):
            connections.append(request)
            if len(connections) > 1:
                return web.Response(status=204)
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(b'data: {"meta":{"id":"X1"},"v":1}\n\n')
            await response.write(b'data: {"meta":{"id":"X1"},"v":2}\n\n')
            await response.write_eof()
            return response

        app = web.Application()
        app.router.add_get("/v2/stream/recentchange", stream)

        async with TestServer(app) as server:
            relay = ChangeFeedRelay(
                change_log.producer(),
                feed_config=FeedConfig(reconnect_delay_seconds=0.01),
            )
            await relay.start(str(server.make_url("/v2/stream/recentchange")), TOPIC)
            await asyncio.wait_for(relay.wait(), timeout=5)

        indexer = await _start_indexer(change_log, search_index)
        await indexer.run_cycle()

        assert search_index.documents() == {"X1": {"meta": {"id": "X1"}, "v": 2}}
        assert change_log.committed == {0: 2}
        await indexer.stop()
