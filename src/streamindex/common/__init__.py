"""Kafka transport handles shared by the relay and the indexer."""

from streamindex.common.batch_consumer import MessageBatchConsumer
from streamindex.common.producer import MessageProducer
from streamindex.common.types import PipelineMessage, from_consumer_record

__all__ = [
    "MessageBatchConsumer",
    "MessageProducer",
    "PipelineMessage",
    "from_consumer_record",
]
