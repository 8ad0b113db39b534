"""Transport types for records read from and written to the Durable Log."""

from dataclasses import dataclass

__all__ = [
    "PipelineMessage",
    "from_consumer_record",
]


@dataclass(frozen=True)
class PipelineMessage:
    """Record received from Kafka."""

    topic: str
    partition: int
    offset: int
    timestamp: int
    key: bytes | None = None
    value: bytes | None = None
    headers: list[tuple[str, bytes]] | None = None

    @property
    def coordinates(self) -> str:
        """``topic_partition_offset``, unique per record in the log."""
        return f"{self.topic}_{self.partition}_{self.offset}"


def from_consumer_record(record) -> PipelineMessage:
    """Convert aiokafka ConsumerRecord to PipelineMessage."""
    headers = None
    if getattr(record, "headers", None):
        headers = [(k, v) for k, v in record.headers]

    return PipelineMessage(
        topic=record.topic,
        partition=record.partition,
        offset=record.offset,
        timestamp=record.timestamp,
        key=record.key,
        value=record.value,
        headers=headers,
    )
