"""Tests for the change feed relay."""

import asyncio
import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config.config import FeedConfig
from core.errors.exceptions import FeedError, LogTransportError
from streamindex.feed.events import FeedEvent
from streamindex.relay.worker import ChangeFeedRelay, RelayEventHandler

TOPIC = "wikimedia_recentchange"


class FakeProducer:
    """In-memory stand-in for MessageProducer."""

    def __init__(self, fail_enqueue=False):
        self.records = []
        self.started = False
        self.start_calls = 0
        self.stop_calls = 0
        self.delivery_failures = 0
        self.fail_enqueue = fail_enqueue

    @property
    def is_started(self):
        return self.started

    async def start(self):
        self.start_calls += 1
        self.started = True

    async def stop(self):
        self.stop_calls += 1
        self.started = False

    async def enqueue(self, topic, key, value):
        if self.fail_enqueue:
            raise LogTransportError("buffer full")
        self.records.append((topic, key, value))


def _feed_config(**overrides):
    values = {"reconnect_delay_seconds": 0.01, "max_reconnect_delay_seconds": 0.02}
    values.update(overrides)
    return FeedConfig(**values)


@pytest.fixture
async def feed_server():
    """First connection streams three events and closes; later ones get 204."""
    state = {"connections": 0}

    async def stream(request):
        state["connections"] += 1
        if state["connections"] > 1:
            return web.Response(status=204)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for n in (1, 2, 3):
            await response.write(f'id: {n}\ndata: {{"meta": {{"id": "E{n}"}}, "v": {n}}}\n\n'.encode())
        await response.write_eof()
        return response

    async def endless(request):
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        try:
            await response.write(b'data: {"meta": {"id": "E1"}}\n\n')
            for _ in range(200):
                await asyncio.sleep(0.05)
                await response.write(b":keepalive\n\n")
        except ConnectionError:
            pass
        return response

    app = web.Application()
    app.router.add_get("/stream", stream)
    app.router.add_get("/endless", endless)
    async with TestServer(app) as server:
        yield server


class TestRelayEventHandler:

    async def test_forwards_payload_verbatim(self):
        producer = FakeProducer()
        handler = RelayEventHandler(producer, TOPIC)
        payload = '{"meta": {"id": "X1"}, "title": "Main Page"}'

        await handler.on_message(FeedEvent(data=payload))

        assert producer.records == [(TOPIC, None, payload)]
        assert handler.events_forwarded == 1

    async def test_enqueue_failure_is_counted_not_raised(self):
        handler = RelayEventHandler(FakeProducer(fail_enqueue=True), TOPIC)

        await handler.on_message(FeedEvent(data="x"))

        assert handler.events_dropped == 1
        assert handler.events_forwarded == 0

    async def test_log_payloads(self, caplog):
        handler = RelayEventHandler(FakeProducer(), TOPIC, log_payloads=True)

        with caplog.at_level(logging.INFO, logger="streamindex.relay.worker"):
            await handler.on_message(FeedEvent(data='{"v": 1}'))

        assert '{"v": 1}' in [r.getMessage() for r in caplog.records]

    async def test_errors_are_counted(self):
        handler = RelayEventHandler(FakeProducer(), TOPIC)

        await handler.on_error(FeedError("dropped"))
        await handler.on_error(ValueError("bad handler"))

        assert handler.errors == 2

    async def test_on_closed_stops_producer(self):
        producer = FakeProducer()
        await producer.start()
        handler = RelayEventHandler(producer, TOPIC)

        await handler.on_closed()

        assert producer.stop_calls == 1
        assert not producer.is_started


class TestChangeFeedRelay:

    async def test_forwards_events_in_order_until_feed_ends(self, feed_server):
        producer = FakeProducer()
        relay = ChangeFeedRelay(producer, feed_config=_feed_config())

        await relay.start(str(feed_server.make_url("/stream")), TOPIC)
        await asyncio.wait_for(relay.wait(), timeout=5)

        assert [value for _, _, value in producer.records] == [
            '{"meta": {"id": "E1"}, "v": 1}',
            '{"meta": {"id": "E2"}, "v": 2}',
            '{"meta": {"id": "E3"}, "v": 3}',
        ]
        assert all(topic == TOPIC and key is None for topic, key, _ in producer.records)
        assert producer.start_calls == 1
        assert not producer.is_started
        assert not relay.is_running

    async def test_stop_closes_feed_and_producer(self, feed_server):
        producer = FakeProducer()
        relay = ChangeFeedRelay(producer, feed_config=_feed_config())
        await relay.start(str(feed_server.make_url("/endless")), TOPIC)

        for _ in range(200):
            if producer.records:
                break
            await asyncio.sleep(0.01)
        await asyncio.wait_for(relay.stop(), timeout=5)

        assert len(producer.records) == 1
        assert producer.stop_calls == 1
        assert relay.client.is_closed
        assert not relay.is_running

    async def test_max_runtime_stops_relay(self, feed_server):
        producer = FakeProducer()
        relay = ChangeFeedRelay(producer, feed_config=_feed_config(max_runtime_seconds=0.3))
        await relay.start(str(feed_server.make_url("/endless")), TOPIC)

        await asyncio.wait_for(relay.wait(), timeout=5)

        assert not relay.is_running
        assert not producer.is_started

    async def test_duplicate_start_is_ignored(self, feed_server):
        producer = FakeProducer()
        relay = ChangeFeedRelay(producer, feed_config=_feed_config())
        url = str(feed_server.make_url("/endless"))
        await relay.start(url, TOPIC)
        client = relay.client

        await relay.start(url, TOPIC)

        assert relay.client is client
        await relay.stop()

    async def test_wait_before_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            await ChangeFeedRelay(FakeProducer()).wait()

    async def test_stop_before_start(self):
        producer = FakeProducer()
        await producer.start()
        relay = ChangeFeedRelay(producer)

        await relay.stop()

        assert producer.stop_calls == 1

    def test_processing_config(self):
        relay = ChangeFeedRelay(
            FakeProducer(),
            processing_config={"stats_interval_seconds": 5, "log_payloads": True},
            worker_id="relay-1",
        )

        assert relay.stats_interval_seconds == 5
        assert relay.log_payloads is True
        assert relay.worker_id == "relay-1"

    def test_cycle_stats_before_start(self):
        stats = ChangeFeedRelay(FakeProducer())._get_cycle_stats(0)
        assert stats == {"records_succeeded": 0, "records_failed": 0, "records_skipped": 0}
