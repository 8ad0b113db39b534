"""Message producer around AIOKafkaProducer with worker-specific config."""

import asyncio
import json
import logging
from typing import Any

from aiokafka import AIOKafkaProducer

from config.config import StreamConfig
from core.errors.exceptions import LogTransportError
from core.utils.json_serializers import json_serializer
from streamindex.common.kafka_config import build_kafka_security_config
from streamindex.common.metrics import (
    record_message_produced,
    update_connection_status,
)

logger = logging.getLogger(__name__)


def _encode_key(key: str | bytes | None) -> bytes | None:
    if key is None or isinstance(key, bytes):
        return key
    return key.encode("utf-8")


def _encode_value(value: str | bytes | dict[str, Any]) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, default=json_serializer).encode("utf-8")


class MessageProducer:
    """Async Kafka producer.

    ``enqueue`` hands a record to the client buffer and returns without
    waiting for the broker; ``send`` waits for the acknowledgement. Buffered
    records are delivered by ``flush`` and ``stop``.
    """

    def __init__(
        self,
        config: StreamConfig,
        worker_name: str,
    ):
        self.config = config
        self.worker_name = worker_name
        self._producer: AIOKafkaProducer | None = None
        self._started = False
        self._pending: set[asyncio.Future] = set()
        self.delivery_failures = 0
        self.producer_config = config.get_worker_config(worker_name, "producer")

        logger.info(
            "Initialized message producer",
            extra={
                "worker_name": worker_name,
                "bootstrap_servers": config.bootstrap_servers,
                "security_protocol": config.security_protocol,
                "producer_config": self.producer_config,
            },
        )

    def _resolve_acks_and_idempotence(self) -> tuple[Any, bool]:
        """Resolve acks value and idempotence setting, enforcing mutual constraints."""
        acks_value = self.producer_config.get("acks", "all")
        if isinstance(acks_value, str) and acks_value.lstrip("-").isdigit():
            acks_value = int(acks_value)

        enable_idempotence = self.producer_config.get("enable_idempotence", True)
        if enable_idempotence and acks_value not in ("all", -1):
            logger.warning(
                "Overriding acks to 'all' because enable_idempotence=True requires it",
                extra={"configured_acks": acks_value, "worker_name": self.worker_name},
            )
            acks_value = "all"

        return acks_value, enable_idempotence

    def _build_kafka_config(self) -> dict[str, Any]:
        acks_value, enable_idempotence = self._resolve_acks_and_idempotence()

        kafka_config: dict[str, Any] = {
            "bootstrap_servers": self.config.bootstrap_servers,
            "client_id": f"streamindex-{self.worker_name}",
            "request_timeout_ms": self.producer_config.get(
                "request_timeout_ms", self.config.request_timeout_ms
            ),
            "metadata_max_age_ms": self.config.metadata_max_age_ms,
            "connections_max_idle_ms": self.config.connections_max_idle_ms,
            "acks": acks_value,
            "retry_backoff_ms": self.producer_config.get("retry_backoff_ms", 100),
            "enable_idempotence": enable_idempotence,
            "linger_ms": self.producer_config.get("linger_ms", 20),
            "max_batch_size": self.producer_config.get("batch_size", 32 * 1024),
        }

        compression = self.producer_config.get("compression_type", "gzip")
        kafka_config["compression_type"] = None if compression in (None, "none") else compression

        if "max_request_size" in self.producer_config:
            kafka_config["max_request_size"] = self.producer_config["max_request_size"]

        kafka_config.update(build_kafka_security_config(self.config))
        return kafka_config

    async def start(self) -> None:
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        logger.info("Starting message producer")

        kafka_config = self._build_kafka_config()
        self._producer = AIOKafkaProducer(**kafka_config)
        try:
            await self._producer.start()
        except Exception as e:
            self._producer = None
            raise LogTransportError("Failed to start Kafka producer", cause=e) from e

        self._started = True
        update_connection_status("producer", connected=True)

        logger.info(
            "Message producer started successfully",
            extra={
                "bootstrap_servers": self.config.bootstrap_servers,
                "acks": kafka_config["acks"],
                "compression_type": kafka_config["compression_type"],
                "linger_ms": kafka_config["linger_ms"],
            },
        )

    async def stop(self) -> None:
        """Flush buffered records and close the client.

        Errors are logged, not raised, so shutdown paths are not masked.
        """
        if self._producer is None:
            logger.debug("Producer already stopped")
            return

        logger.info("Stopping message producer", extra={"pending": len(self._pending)})

        try:
            if self._started:
                await self._producer.flush()
            await self._producer.stop()
            logger.info(
                "Message producer stopped successfully",
                extra={"delivery_failures": self.delivery_failures},
            )
        except Exception as e:
            logger.error(
                "Error stopping message producer",
                extra={"error": str(e)},
                exc_info=True,
            )
        finally:
            update_connection_status("producer", connected=False)
            self._producer = None
            self._started = False
            self._pending.clear()

    def _ensure_started(self) -> AIOKafkaProducer:
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")
        return self._producer

    def _on_delivery(self, topic: str, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            self.delivery_failures += 1
            record_message_produced(topic, success=False, error_type="cancelled")
            return

        error = future.exception()
        if error is None:
            record_message_produced(topic)
            return

        self.delivery_failures += 1
        record_message_produced(topic, success=False, error_type=type(error).__name__)
        logger.error(
            "Buffered record was not delivered",
            extra={"topic": topic, "error": str(error), "error_type": type(error).__name__},
        )

    async def enqueue(
        self,
        topic: str,
        key: str | bytes | None,
        value: str | bytes | dict[str, Any],
    ) -> asyncio.Future:
        """Append a record to the producer buffer without waiting for the ack.

        Returns the delivery future; delivery failures are logged and counted.
        Raises LogTransportError when the record cannot be buffered.
        """
        producer = self._ensure_started()
        value_bytes = _encode_value(value)

        try:
            future = await producer.send(topic, key=_encode_key(key), value=value_bytes)
        except Exception as e:
            self.delivery_failures += 1
            record_message_produced(topic, success=False, error_type=type(e).__name__)
            raise LogTransportError(
                f"Failed to enqueue record for {topic}",
                cause=e,
                context={"topic": topic, "value_size": len(value_bytes)},
            ) from e

        self._pending.add(future)
        future.add_done_callback(lambda f: self._on_delivery(topic, f))
        return future

    async def flush(self) -> None:
        producer = self._ensure_started()
        logger.debug("Flushing producer", extra={"pending": len(self._pending)})
        await producer.flush()

    @property
    def is_started(self) -> bool:
        return self._started and self._producer is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)


__all__ = [
    "MessageProducer",
]
