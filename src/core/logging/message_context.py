"""Durable log record context variables for structured logging."""

from contextvars import ContextVar
from typing import Any, Dict, Optional

_message_topic: ContextVar[str] = ContextVar("message_topic", default="")
_message_partition: ContextVar[int] = ContextVar("message_partition", default=-1)
_message_offset: ContextVar[int] = ContextVar("message_offset", default=-1)
_message_consumer_group: ContextVar[str] = ContextVar("message_consumer_group", default="")


def set_message_context(
    topic: Optional[str] = None,
    partition: Optional[int] = None,
    offset: Optional[int] = None,
    consumer_group: Optional[str] = None,
) -> None:
    """
    Set record context variables for structured logging.

    Args:
        topic: Topic name
        partition: Partition number
        offset: Record offset within partition
        consumer_group: Consumer group ID
    """
    if topic is not None:
        _message_topic.set(topic)
    if partition is not None:
        _message_partition.set(partition)
    if offset is not None:
        _message_offset.set(offset)
    if consumer_group is not None:
        _message_consumer_group.set(consumer_group)


def get_message_context() -> Dict[str, Any]:
    """Get current record logging context; unset fields are omitted."""
    context: Dict[str, Any] = {}

    topic = _message_topic.get()
    if topic:
        context["message_topic"] = topic
    partition = _message_partition.get()
    if partition >= 0:
        context["message_partition"] = partition
    offset = _message_offset.get()
    if offset >= 0:
        context["message_offset"] = offset
    consumer_group = _message_consumer_group.get()
    if consumer_group:
        context["message_consumer_group"] = consumer_group

    return context


def clear_message_context() -> None:
    """Clear all record logging context variables."""
    _message_topic.set("")
    _message_partition.set(-1)
    _message_offset.set(-1)
    _message_consumer_group.set("")


class MessageLogContext:
    """
    Context manager that scopes record context to a block.

    Usage:
        with MessageLogContext(topic="changes", partition=0, offset=12345):
            index_record()
    """

    def __init__(
        self,
        topic: Optional[str] = None,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
        consumer_group: Optional[str] = None,
    ):
        self.new_context = {
            "topic": topic,
            "partition": partition,
            "offset": offset,
            "consumer_group": consumer_group,
        }
        self.old_context: Dict[str, Any] = {}

    def __enter__(self) -> "MessageLogContext":
        self.old_context = {
            "topic": _message_topic.get(),
            "partition": _message_partition.get(),
            "offset": _message_offset.get(),
            "consumer_group": _message_consumer_group.get(),
        }
        set_message_context(**self.new_context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        set_message_context(**self.old_context)
        return False
