"""Message batch consumer handle with explicit, caller-driven commits.

Wrapper around AIOKafkaConsumer. Unlike a self-driving consumer loop, this
handle only exposes the primitives the indexer sequences itself:

- ``poll`` fetches one batch across the assigned partitions
- ``commit`` advances the group cursor for exactly the records of that batch
- ``rewind`` seeks each partition of an unfinished batch back to its first
  record so the next poll redelivers it

Auto-commit is always disabled and ``stop`` never commits.
"""

import asyncio
import logging
from collections import OrderedDict

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import TopicPartition

from config.config import StreamConfig
from core.errors.exceptions import LogTransportError, OffsetCommitError
from streamindex.common.kafka_config import build_kafka_security_config
from streamindex.common.metrics import (
    record_messages_consumed,
    update_assigned_partitions,
    update_connection_status,
)
from streamindex.common.types import PipelineMessage, from_consumer_record

logger = logging.getLogger(__name__)


def partition_offsets(messages: list[PipelineMessage]) -> "OrderedDict[TopicPartition, tuple[int, int]]":
    """Map each partition in ``messages`` to its (first, last) offset."""
    ranges: OrderedDict[TopicPartition, tuple[int, int]] = OrderedDict()
    for msg in messages:
        tp = TopicPartition(msg.topic, msg.partition)
        if tp in ranges:
            first, last = ranges[tp]
            ranges[tp] = (min(first, msg.offset), max(last, msg.offset))
        else:
            ranges[tp] = (msg.offset, msg.offset)
    return ranges


def _format_offsets(offsets: dict[TopicPartition, int]) -> dict[str, int]:
    return {f"{tp.topic}:{tp.partition}": offset for tp, offset in offsets.items()}


class MessageBatchConsumer:
    """Consumer-group member that fetches batches and commits on request."""

    # Optional consumer config keys forwarded to AIOKafkaConsumer if present
    _OPTIONAL_CONSUMER_KEYS = (
        "heartbeat_interval_ms",
        "fetch_min_bytes",
        "fetch_max_wait_ms",
        "max_partition_fetch_bytes",
    )

    def __init__(
        self,
        config: StreamConfig,
        worker_name: str,
        topics: list[str],
        **kwargs,
    ):
        """
        Args:
            config: StreamConfig with connection details
            worker_name: Worker name used for config lookup and client id
            topics: Topics to subscribe to
            **kwargs: Optional overrides:
                batch_size (int): max records per poll (default: consumer max_poll_records or 500)
                instance_id (str): Instance identifier for parallel consumers
        """
        if not topics:
            raise ValueError("At least one topic must be specified")

        self.config = config
        self.worker_name = worker_name
        self.topics = topics
        self.instance_id = kwargs.get("instance_id")
        self.consumer_config = config.get_worker_config(worker_name, "consumer")
        self.group_id = config.get_consumer_group(worker_name)
        self.batch_size = kwargs.get("batch_size") or self.consumer_config.get("max_poll_records", 500)
        self._consumer: AIOKafkaConsumer | None = None
        self._running = False

        logger.info(
            "Initialized message batch consumer",
            extra={
                "worker_name": worker_name,
                "topics": topics,
                "group_id": self.group_id,
                "batch_size": self.batch_size,
                "bootstrap_servers": config.bootstrap_servers,
            },
        )

    def _build_kafka_config(self) -> dict:
        """Build the AIOKafkaConsumer configuration dict."""
        client_id = f"streamindex-{self.worker_name}"
        if self.instance_id:
            client_id = f"{client_id}-{self.instance_id}"

        cfg = {
            "bootstrap_servers": self.config.bootstrap_servers,
            "group_id": self.group_id,
            "client_id": client_id,
            "request_timeout_ms": self.config.request_timeout_ms,
            "metadata_max_age_ms": self.config.metadata_max_age_ms,
            "connections_max_idle_ms": self.config.connections_max_idle_ms,
            # Offsets are committed by the caller after indexing
            "enable_auto_commit": False,
            "auto_offset_reset": self.consumer_config.get("auto_offset_reset", "latest"),
            "max_poll_records": self.batch_size,
            "max_poll_interval_ms": self.consumer_config.get("max_poll_interval_ms", 300000),
            "session_timeout_ms": self.consumer_config.get("session_timeout_ms", 30000),
        }

        for key in self._OPTIONAL_CONSUMER_KEYS:
            if key in self.consumer_config:
                cfg[key] = self.consumer_config[key]

        cfg.update(build_kafka_security_config(self.config))
        return cfg

    async def _log_starting_offsets(self) -> None:
        """Log partition offsets on startup for crash recovery visibility."""
        assignment = self._consumer.assignment()
        update_assigned_partitions(self.group_id, len(assignment))

        partition_positions = {}
        for tp in assignment:
            try:
                partition_positions[f"{tp.topic}:{tp.partition}"] = await self._consumer.position(tp)
            except Exception:
                partition_positions[f"{tp.topic}:{tp.partition}"] = "unknown"

        logger.info(
            "Message batch consumer started successfully",
            extra={
                "topics": self.topics,
                "group_id": self.group_id,
                "partitions": len(assignment),
                "offsets": partition_positions,
            },
        )

    async def start(self) -> None:
        if self._running:
            logger.warning("Batch consumer already running, ignoring duplicate start call")
            return

        logger.info(
            "Starting message batch consumer",
            extra={"topics": self.topics, "group_id": self.group_id, "batch_size": self.batch_size},
        )

        self._consumer = AIOKafkaConsumer(*self.topics, **self._build_kafka_config())
        try:
            await self._consumer.start()
        except Exception as e:
            self._consumer = None
            raise LogTransportError("Failed to start Kafka consumer", cause=e) from e

        self._running = True
        update_connection_status("consumer", connected=True)
        await self._log_starting_offsets()

    async def stop(self) -> None:
        """Leave the group without committing anything."""
        if self._consumer is None:
            logger.debug("Batch consumer not running or already stopped")
            return

        logger.info("Stopping message batch consumer")
        self._running = False

        try:
            await self._consumer.stop()
            logger.info("Message batch consumer stopped successfully")
        except Exception as e:
            logger.error(
                "Error stopping message batch consumer",
                extra={"error": str(e)},
                exc_info=True,
            )
        finally:
            update_connection_status("consumer", connected=False)
            update_assigned_partitions(self.group_id, 0)
            self._consumer = None

    def _ensure_running(self) -> AIOKafkaConsumer:
        if not self._running or self._consumer is None:
            raise RuntimeError("Consumer not started. Call start() first.")
        return self._consumer

    async def poll(self, timeout_ms: int, max_records: int | None = None) -> list[PipelineMessage]:
        """Fetch up to ``max_records`` records, waiting at most ``timeout_ms``.

        Records are grouped per partition and kept in offset order within each
        partition. An empty list is a normal outcome.
        """
        consumer = self._ensure_running()
        try:
            data = await consumer.getmany(
                timeout_ms=timeout_ms,
                max_records=max_records or self.batch_size,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise LogTransportError("Failed to poll Kafka", cause=e) from e

        messages: list[PipelineMessage] = []
        for tp, records in data.items():
            converted = sorted((from_consumer_record(r) for r in records), key=lambda m: m.offset)
            if converted:
                record_messages_consumed(tp.topic, self.group_id, len(converted))
            messages.extend(converted)
        return messages

    async def commit(self, messages: list[PipelineMessage]) -> dict[str, int]:
        """Commit ``last_offset + 1`` for every partition present in ``messages``.

        Raises OffsetCommitError if the broker rejects or cannot receive the
        commit. Returns the committed offsets keyed ``topic:partition``.
        """
        consumer = self._ensure_running()
        offsets = {tp: last + 1 for tp, (_, last) in partition_offsets(messages).items()}
        if not offsets:
            return {}

        try:
            await consumer.commit(offsets)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise OffsetCommitError(
                "Offset commit failed",
                offsets=_format_offsets(offsets),
                cause=e,
            ) from e

        committed = _format_offsets(offsets)
        logger.debug("Committed offsets", extra={"group_id": self.group_id, "offsets": committed})
        return committed

    def rewind(self, messages: list[PipelineMessage]) -> dict[str, int]:
        """Seek each partition in ``messages`` back to its first offset.

        Partitions revoked since the poll are skipped; their new owner resumes
        from the last committed offset anyway.
        """
        consumer = self._ensure_running()
        assigned = consumer.assignment()
        rewound: dict[TopicPartition, int] = {}

        for tp, (first, _) in partition_offsets(messages).items():
            if tp not in assigned:
                logger.info(
                    "Partition no longer assigned, not rewinding",
                    extra={"topic": tp.topic, "partitions": [tp.partition]},
                )
                continue
            consumer.seek(tp, first)
            rewound[tp] = first

        formatted = _format_offsets(rewound)
        if formatted:
            logger.info("Rewound partitions for redelivery", extra={"offsets": formatted})
        return formatted

    def assignment(self) -> set[TopicPartition]:
        if self._consumer is None:
            return set()
        return self._consumer.assignment()

    @property
    def is_running(self) -> bool:
        return self._running and self._consumer is not None


__all__ = [
    "MessageBatchConsumer",
    "partition_offsets",
]
