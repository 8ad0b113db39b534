"""Feed event type and the handler capability."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class FeedEvent:
    """One dispatched event from the feed."""

    data: str
    event_type: str = "message"
    last_event_id: str | None = None


@runtime_checkable
class FeedHandler(Protocol):
    """Callbacks invoked by EventSourceClient.

    ``on_message`` is awaited for every event in stream order. Exceptions it
    raises are passed to ``on_error`` and the stream continues. ``on_closed``
    is called exactly once when the client is closed.
    """

    async def on_open(self) -> None: ...

    async def on_message(self, event: FeedEvent) -> None: ...

    async def on_error(self, error: Exception) -> None: ...

    async def on_closed(self) -> None: ...
