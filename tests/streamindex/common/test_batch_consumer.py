"""Tests for MessageBatchConsumer."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiokafka.structs import ConsumerRecord, TopicPartition

from config.config import StreamConfig
from core.errors.exceptions import LogTransportError, OffsetCommitError
from streamindex.common.batch_consumer import MessageBatchConsumer, partition_offsets
from streamindex.common.types import PipelineMessage

TOPIC = "wikimedia_recentchange"


def _make_config(**consumer):
    return StreamConfig(
        bootstrap_servers="localhost:9092",
        consumer_defaults={"max_poll_records": 100, **consumer},
    )


def _make_kafka_mock(**overrides):
    """Create a mock AIOKafkaConsumer with sync/async methods set correctly."""
    mock = Mock()
    mock.start = AsyncMock()
    mock.stop = AsyncMock()
    mock.commit = AsyncMock()
    mock.position = AsyncMock(return_value=0)
    mock.getmany = AsyncMock(return_value={})
    mock.assignment = Mock(return_value=overrides.get("assignment", set()))
    return mock


def _make_consumer_record(partition=0, offset=0, value=b"v"):
    return ConsumerRecord(
        topic=TOPIC,
        partition=partition,
        offset=offset,
        timestamp=1000,
        timestamp_type=0,
        key=None,
        value=value,
        checksum=None,
        serialized_key_size=0,
        serialized_value_size=len(value),
        headers=[],
    )


def _msg(partition, offset):
    return PipelineMessage(topic=TOPIC, partition=partition, offset=offset, timestamp=0)


async def _started(kafka_mock, config=None):
    consumer = MessageBatchConsumer(config or _make_config(), "indexer", [TOPIC])
    with patch("streamindex.common.batch_consumer.AIOKafkaConsumer", return_value=kafka_mock):
        await consumer.start()
    return consumer


class TestPartitionOffsets:

    def test_first_and_last_per_partition(self):
        ranges = partition_offsets([_msg(0, 5), _msg(1, 2), _msg(0, 7), _msg(0, 6)])

        assert ranges == {
            TopicPartition(TOPIC, 0): (5, 7),
            TopicPartition(TOPIC, 1): (2, 2),
        }

    def test_empty(self):
        assert partition_offsets([]) == {}


class TestMessageBatchConsumerInit:

    def test_raises_on_empty_topics(self):
        with pytest.raises(ValueError, match="At least one topic"):
            MessageBatchConsumer(_make_config(), "indexer", [])

    def test_batch_size_from_consumer_config(self):
        consumer = MessageBatchConsumer(_make_config(), "indexer", [TOPIC])
        assert consumer.batch_size == 100

    def test_batch_size_override(self):
        consumer = MessageBatchConsumer(_make_config(), "indexer", [TOPIC], batch_size=10)
        assert consumer.batch_size == 10

    def test_default_group(self):
        consumer = MessageBatchConsumer(_make_config(), "indexer", [TOPIC])
        assert consumer.group_id == "consumer-opensearch"

    def test_auto_commit_always_disabled(self):
        consumer = MessageBatchConsumer(_make_config(), "indexer", [TOPIC], instance_id="2")
        cfg = consumer._build_kafka_config()

        assert cfg["enable_auto_commit"] is False
        assert cfg["group_id"] == "consumer-opensearch"
        assert cfg["client_id"] == "streamindex-indexer-2"
        assert cfg["max_poll_records"] == 100

    def test_forwards_optional_keys(self):
        consumer = MessageBatchConsumer(
            _make_config(heartbeat_interval_ms=3000, auto_offset_reset="earliest"), "indexer", [TOPIC]
        )
        cfg = consumer._build_kafka_config()

        assert cfg["heartbeat_interval_ms"] == 3000
        assert cfg["auto_offset_reset"] == "earliest"


class TestMessageBatchConsumerLifecycle:

    async def test_start_and_stop_never_commits(self):
        kafka = _make_kafka_mock(assignment={TopicPartition(TOPIC, 0)})
        consumer = await _started(kafka)

        assert consumer.is_running
        await consumer.stop()

        kafka.stop.assert_awaited_once()
        kafka.commit.assert_not_awaited()
        assert not consumer.is_running

    async def test_start_failure(self):
        kafka = _make_kafka_mock()
        kafka.start.side_effect = ConnectionError("no brokers")

        with pytest.raises(LogTransportError):
            await _started(kafka)

    async def test_poll_requires_start(self):
        consumer = MessageBatchConsumer(_make_config(), "indexer", [TOPIC])
        with pytest.raises(RuntimeError, match="not started"):
            await consumer.poll(100)


class TestMessageBatchConsumerPoll:

    async def test_converts_and_orders_per_partition(self):
        kafka = _make_kafka_mock()
        kafka.getmany.return_value = {
            TopicPartition(TOPIC, 0): [_make_consumer_record(0, 4), _make_consumer_record(0, 3)],
            TopicPartition(TOPIC, 1): [_make_consumer_record(1, 9)],
        }
        consumer = await _started(kafka)

        messages = await consumer.poll(timeout_ms=500)

        assert [(m.partition, m.offset) for m in messages] == [(0, 3), (0, 4), (1, 9)]
        kafka.getmany.assert_awaited_once_with(timeout_ms=500, max_records=100)

    async def test_empty_poll(self):
        consumer = await _started(_make_kafka_mock())
        assert await consumer.poll(timeout_ms=10, max_records=5) == []

    async def test_poll_failure(self):
        kafka = _make_kafka_mock()
        kafka.getmany.side_effect = RuntimeError("fetch failed")
        consumer = await _started(kafka)

        with pytest.raises(LogTransportError):
            await consumer.poll(10)


class TestMessageBatchConsumerCommit:

    async def test_commits_last_offset_plus_one(self):
        kafka = _make_kafka_mock()
        consumer = await _started(kafka)

        committed = await consumer.commit([_msg(0, 3), _msg(0, 4), _msg(1, 9)])

        kafka.commit.assert_awaited_once_with(
            {TopicPartition(TOPIC, 0): 5, TopicPartition(TOPIC, 1): 10}
        )
        assert committed == {f"{TOPIC}:0": 5, f"{TOPIC}:1": 10}

    async def test_empty_batch_commits_nothing(self):
        kafka = _make_kafka_mock()
        consumer = await _started(kafka)

        assert await consumer.commit([]) == {}
        kafka.commit.assert_not_awaited()

    async def test_commit_failure(self):
        kafka = _make_kafka_mock()
        kafka.commit.side_effect = RuntimeError("rebalance in progress")
        consumer = await _started(kafka)

        with pytest.raises(OffsetCommitError) as exc_info:
            await consumer.commit([_msg(0, 1)])

        assert exc_info.value.offsets == {f"{TOPIC}:0": 2}


class TestMessageBatchConsumerRewind:

    async def test_seeks_to_first_offset(self):
        kafka = _make_kafka_mock(assignment={TopicPartition(TOPIC, 0), TopicPartition(TOPIC, 1)})
        consumer = await _started(kafka)

        rewound = consumer.rewind([_msg(0, 3), _msg(0, 4), _msg(1, 9)])

        kafka.seek.assert_any_call(TopicPartition(TOPIC, 0), 3)
        kafka.seek.assert_any_call(TopicPartition(TOPIC, 1), 9)
        assert rewound == {f"{TOPIC}:0": 3, f"{TOPIC}:1": 9}

    async def test_skips_revoked_partitions(self):
        kafka = _make_kafka_mock(assignment={TopicPartition(TOPIC, 1)})
        consumer = await _started(kafka)

        rewound = consumer.rewind([_msg(0, 3), _msg(1, 9)])

        kafka.seek.assert_called_once_with(TopicPartition(TOPIC, 1), 9)
        assert rewound == {f"{TOPIC}:1": 9}
