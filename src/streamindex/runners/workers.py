"""Relay and indexer runners.

Each runner builds the transport handles from config, hands them to its
worker and runs the worker under the shared shutdown event.
"""

import asyncio
import logging
from functools import partial

from config.config import StreamConfig
from core.logging.setup import log_worker_startup
from core.resilience.retry import RetryConfig
from core.utils import generate_worker_id
from streamindex.common.batch_consumer import MessageBatchConsumer
from streamindex.common.producer import MessageProducer
from streamindex.indexer.worker import BatchIndexer
from streamindex.relay.worker import ChangeFeedRelay
from streamindex.runners.common import execute_worker_with_shutdown
from streamindex.search.client import SearchIndexClient

logger = logging.getLogger(__name__)


async def run_relay(config: StreamConfig, shutdown_event: asyncio.Event) -> None:
    """Change feed to Kafka. Runs until shutdown or until the feed ends."""
    topic = config.get_topic()
    worker_id = generate_worker_id(ChangeFeedRelay.WORKER_NAME)

    log_worker_startup(
        logger,
        "change feed relay",
        kafka_bootstrap_servers=config.bootstrap_servers,
        output_topic=topic,
        extra_config={"Feed URL": config.feed.url},
    )

    producer = MessageProducer(config, ChangeFeedRelay.WORKER_NAME)
    relay = ChangeFeedRelay(
        producer,
        feed_config=config.feed,
        processing_config=config.get_worker_config(ChangeFeedRelay.WORKER_NAME, "processing"),
        worker_id=worker_id,
    )

    await execute_worker_with_shutdown(
        relay,
        stage_name=ChangeFeedRelay.WORKER_NAME,
        shutdown_event=shutdown_event,
        start_fn=partial(relay.start, config.feed.url, topic),
        run_fn=relay.wait,
        worker_id=worker_id,
    )


async def run_indexer(config: StreamConfig, shutdown_event: asyncio.Event) -> None:
    """Kafka to search index. Raises IndexerFatalError when cycles keep failing."""
    topic = config.get_topic()
    worker_name = BatchIndexer.WORKER_NAME
    worker_id = generate_worker_id(worker_name)
    processing_config = config.get_worker_config(worker_name, "processing")

    log_worker_startup(
        logger,
        "batch indexer",
        kafka_bootstrap_servers=config.bootstrap_servers,
        input_topic=topic,
        consumer_group=config.get_consumer_group(worker_name),
        extra_config={"Index": config.search.index},
    )

    consumer = MessageBatchConsumer(
        config,
        worker_name,
        [topic],
        batch_size=processing_config.get("batch_size"),
    )
    index_client = SearchIndexClient(
        config.search.url,
        timeout_seconds=config.search.timeout_seconds,
        verify_ssl=config.search.verify_ssl,
        retry_config=RetryConfig.from_dict(config.search.retry),
    )
    indexer = BatchIndexer(
        consumer,
        index_client,
        config.search.index,
        processing_config=processing_config,
        index_body=config.search.index_body,
        worker_id=worker_id,
    )

    await execute_worker_with_shutdown(
        indexer,
        stage_name=worker_name,
        shutdown_event=shutdown_event,
        worker_id=worker_id,
    )


WORKER_RUNNERS = {
    "relay": run_relay,
    "indexer": run_indexer,
}
