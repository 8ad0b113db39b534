"""Server-Sent Events change feed client."""

from streamindex.feed.client import EventSourceClient
from streamindex.feed.events import FeedEvent, FeedHandler

__all__ = [
    "EventSourceClient",
    "FeedEvent",
    "FeedHandler",
]
