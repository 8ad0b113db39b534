"""Ingestion relay.

Forwards every event of the change feed, verbatim, onto a Kafka topic.
The relay holds no cursor and no index state: it is a pure forwarding
stage. Events that arrive while the feed is reconnecting are not recovered.
"""

import asyncio
import logging
from typing import Any

import aiohttp

from config.config import FeedConfig
from core.errors.exceptions import FeedError, LogTransportError
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.utilities import log_exception
from streamindex.common.producer import MessageProducer
from streamindex.feed.client import EventSourceClient, payload_excerpt
from streamindex.feed.events import FeedEvent

logger = logging.getLogger(__name__)


class RelayEventHandler:
    """FeedHandler that enqueues each event onto ``topic``.

    Enqueueing only buffers the record; delivery is acknowledged
    asynchronously by the producer. ``on_closed`` drains and closes the
    producer so buffered events are not dropped.
    """

    def __init__(
        self,
        producer: MessageProducer,
        topic: str,
        log_payloads: bool = False,
    ):
        self.producer = producer
        self.topic = topic
        self.log_payloads = log_payloads
        self.events_forwarded = 0
        self.events_dropped = 0
        self.errors = 0
        self.opened = 0

    async def on_open(self) -> None:
        self.opened += 1
        logger.info("Change feed connected", extra={"topic": self.topic})

    async def on_message(self, event: FeedEvent) -> None:
        if self.log_payloads:
            logger.info(event.data)
        else:
            logger.debug(
                "Forwarding feed event",
                extra={"event_type": event.event_type, "payload_excerpt": payload_excerpt(event.data)},
            )

        try:
            await self.producer.enqueue(self.topic, None, event.data)
        except LogTransportError as e:
            self.events_dropped += 1
            log_exception(
                logger,
                e,
                "Failed to enqueue feed event",
                include_traceback=False,
                topic=self.topic,
                payload_excerpt=payload_excerpt(event.data),
            )
            return

        self.events_forwarded += 1

    async def on_error(self, error: Exception) -> None:
        self.errors += 1
        if isinstance(error, FeedError):
            log_exception(logger, error, "Change feed error", level=logging.WARNING, include_traceback=False)
        else:
            log_exception(logger, error, "Error in event handling")

    async def on_closed(self) -> None:
        logger.info(
            "Change feed closed, draining producer",
            extra={"events_forwarded": self.events_forwarded, "events_dropped": self.events_dropped},
        )
        await self.producer.stop()


class ChangeFeedRelay:
    """Bridge a Server-Sent Events feed to a Kafka topic.

    Usage:
        >>> producer = MessageProducer(config, "relay")
        >>> relay = ChangeFeedRelay(producer, config.feed)
        >>> await relay.start(config.feed.url, config.get_topic())
        >>> await relay.wait()
    """

    WORKER_NAME = "relay"

    # Cycle output configuration
    CYCLE_LOG_INTERVAL_SECONDS = 30

    # How long stop() waits for the stream task before cancelling it
    STOP_TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        producer: MessageProducer,
        feed_config: FeedConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        processing_config: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ):
        self.producer = producer
        self.feed_config = feed_config or FeedConfig()
        self.session = session
        processing_config = processing_config or {}
        self.stats_interval_seconds = processing_config.get(
            "stats_interval_seconds", self.CYCLE_LOG_INTERVAL_SECONDS
        )
        self.log_payloads = bool(processing_config.get("log_payloads", False))
        self.worker_id = worker_id or self.WORKER_NAME

        self.handler: RelayEventHandler | None = None
        self.client: EventSourceClient | None = None
        self._task: asyncio.Task | None = None
        self._stats_logger: PeriodicStatsLogger | None = None

    async def start(self, feed_url: str, topic: str) -> None:
        """Open the feed and begin forwarding; returns once streaming is launched."""
        if self._task is not None and not self._task.done():
            logger.warning("Relay already running, ignoring duplicate start call")
            return

        if not self.producer.is_started:
            await self.producer.start()

        self.handler = RelayEventHandler(self.producer, topic, log_payloads=self.log_payloads)
        self.client = EventSourceClient(
            feed_url,
            self.handler,
            session=self.session,
            user_agent=self.feed_config.user_agent,
            reconnect_delay_seconds=self.feed_config.reconnect_delay_seconds,
            max_reconnect_delay_seconds=self.feed_config.max_reconnect_delay_seconds,
            read_timeout_seconds=self.feed_config.read_timeout_seconds,
        )
        self._task = asyncio.create_task(self.client.run(), name="feed-stream")

        self._stats_logger = PeriodicStatsLogger(
            interval_seconds=self.stats_interval_seconds,
            get_stats=self._get_cycle_stats,
            stage=self.WORKER_NAME,
            worker_id=self.worker_id,
        )
        self._stats_logger.start()

        logger.info(
            "Relay started",
            extra={"url": feed_url, "topic": topic},
        )

    async def wait(self) -> None:
        """Block until the stream ends, or until ``max_runtime_seconds`` elapses."""
        if self._task is None:
            raise RuntimeError("Relay not started. Call start() first.")

        max_runtime = self.feed_config.max_runtime_seconds
        if max_runtime and max_runtime > 0:
            done, _ = await asyncio.wait({self._task}, timeout=max_runtime)
            if not done:
                logger.info("Relay reached max runtime, stopping", extra={"delay_seconds": max_runtime})
                await self.stop()
                return
        else:
            await asyncio.shield(self._task)

        await self._stop_stats_logger()

    async def stop(self) -> None:
        """Close the feed; the handler then drains and closes the producer."""
        logger.info("Stopping relay")

        if self.client is not None:
            await self.client.close()

        if self._task is not None and not self._task.done():
            done, _ = await asyncio.wait({self._task}, timeout=self.STOP_TIMEOUT_SECONDS)
            if not done:
                logger.warning("Feed stream did not stop in time, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        # Covers a stop() before start() or a stream that never ran
        if self.producer.is_started:
            await self.producer.stop()

        await self._stop_stats_logger()
        logger.info("Relay stopped", extra=self._get_cycle_stats(0))

    async def _stop_stats_logger(self) -> None:
        if self._stats_logger is not None:
            await self._stats_logger.stop()
            self._stats_logger = None

    def _get_cycle_stats(self, cycle_count: int) -> dict[str, Any]:
        handler = self.handler
        if handler is None:
            return {"records_succeeded": 0, "records_failed": 0, "records_skipped": 0}
        return {
            "records_succeeded": handler.events_forwarded,
            "records_failed": handler.events_dropped + self.producer.delivery_failures,
            "records_skipped": 0,
            "events_forwarded": handler.events_forwarded,
            "events_dropped": handler.events_dropped,
        }

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
