"""Reconnecting change feed subscription.

Wire parsing and the single connection are handled by aiohttp-sse-client;
this module owns what sits around it: the reconnect policy, the
``Last-Event-ID`` carried between connections and the FeedHandler callbacks.
"""

import asyncio
import logging

import aiohttp
from aiohttp_sse_client.client import READY_STATE_CONNECTING, EventSource, MessageEvent

from core.errors.exceptions import FeedError
from core.resilience.retry import RetryConfig
from core.types import ErrorCategory
from streamindex.common.metrics import feed_events_counter, feed_reconnects_counter
from streamindex.feed.events import FeedEvent, FeedHandler

logger = logging.getLogger(__name__)

# Maximum characters of an event payload included in log lines
PAYLOAD_EXCERPT_CHARS = 200


def payload_excerpt(data: str) -> str:
    if len(data) <= PAYLOAD_EXCERPT_CHARS:
        return data
    return data[:PAYLOAD_EXCERPT_CHARS] + "..."


class _StreamEnded(Exception):
    """Raised from the EventSource error callback when a stream finishes."""


class EventSourceClient:
    """Subscribe to an event-stream endpoint and push events to a FeedHandler.

    The client reconnects after any connection drop, read timeout or
    unusable response (including 4xx/5xx), waiting with capped exponential
    backoff. The backoff only resets after a connection has delivered at
    least one event, so a server that accepts and immediately closes is
    retried progressively slower. The last seen event id is resent as
    ``Last-Event-ID`` on reconnect. A non-error answer other than 200
    (notably 204 No Content) ends the stream for good.
    """

    def __init__(
        self,
        url: str,
        handler: FeedHandler,
        session: aiohttp.ClientSession | None = None,
        user_agent: str = "streamindex/0.1",
        reconnect_delay_seconds: float = 3.0,
        max_reconnect_delay_seconds: float = 60.0,
        read_timeout_seconds: float = 60.0,
        last_event_id: str | None = None,
    ):
        self.url = url
        self.handler = handler
        self._session = session
        self._owns_session = session is None
        self.user_agent = user_agent
        self._timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=30,
            sock_read=read_timeout_seconds or None,
        )
        self._backoff = RetryConfig(
            max_attempts=1,
            base_delay=reconnect_delay_seconds,
            max_delay=max_reconnect_delay_seconds,
        )
        self._last_event_id = last_event_id
        self._closing = asyncio.Event()
        self._source: EventSource | None = None
        self._running = False
        self._closed_notified = False
        self.events_received = 0
        self.connect_count = 0

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    @property
    def is_closed(self) -> bool:
        return self._closing.is_set()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _request_headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id
        return headers

    async def run(self) -> None:
        """Stream until ``close()`` is called or the server declines the subscription."""
        if self._running:
            raise RuntimeError("EventSourceClient is already running")
        self._running = True
        failures = 0

        try:
            while not self._closing.is_set():
                try:
                    delivered = await self._stream_once()
                    if delivered is None:
                        self._closing.set()
                        return
                    failures = 0 if delivered else failures + 1
                    if not self._closing.is_set():
                        logger.warning(
                            "Feed stream ended, reconnecting",
                            extra={"url": self.url, "last_event_id": self.last_event_id},
                        )
                except asyncio.CancelledError:
                    raise
                except (
                    aiohttp.ClientError,
                    ConnectionError,
                    asyncio.TimeoutError,
                    UnicodeDecodeError,
                ) as e:
                    if self._closing.is_set():
                        break
                    failures += 1
                    await self._notify_error(
                        FeedError(f"Feed connection failed: {type(e).__name__}: {e}", cause=e)
                    )

                if self._closing.is_set():
                    break
                await self._wait_before_reconnect(max(failures - 1, 0))
        finally:
            self._running = False
            await self._finish()

    async def _stream_once(self) -> bool | None:
        """Open one connection and pump its events.

        Returns True if at least one event was dispatched, False if the
        stream ended without any, None if the server declined the
        subscription.
        """
        source: EventSource | None = None

        def on_source_error() -> None:
            # Also called on failed connects, where ready_state is CLOSED
            if source is not None and source.ready_state == READY_STATE_CONNECTING:
                raise _StreamEnded()

        source = EventSource(
            self.url,
            session=self._ensure_session(),
            on_error=on_source_error,
            headers=self._request_headers(),
            timeout=self._timeout,
        )
        self._source = source
        self.connect_count += 1
        delivered = False

        try:
            try:
                await source.connect()
            except ConnectionAbortedError as e:
                logger.info(
                    "Feed declined the subscription, not reconnecting",
                    extra={"url": self.url, "error": str(e)},
                )
                return None
            if self._closing.is_set():
                return delivered

            logger.info(
                "Feed stream opened",
                extra={"url": self.url, "last_event_id": self.last_event_id},
            )
            await self._call_handler("on_open")
            async for message in source:
                if self._closing.is_set():
                    break
                delivered = True
                await self._dispatch(message)
        except _StreamEnded:
            pass
        finally:
            self._source = None
            await source.close()
        return delivered

    async def _dispatch(self, message: MessageEvent) -> None:
        if message.last_event_id:
            self._last_event_id = message.last_event_id
        event = FeedEvent(
            data=message.data,
            event_type=message.type or "message",
            last_event_id=self._last_event_id,
        )

        self.events_received += 1
        try:
            await self.handler.on_message(event)
            feed_events_counter.labels(outcome="handled").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            feed_events_counter.labels(outcome="handler_error").inc()
            await self._notify_error(e, payload=payload_excerpt(event.data))

    async def _wait_before_reconnect(self, attempt: int) -> None:
        delay = self._backoff.get_delay(attempt)
        feed_reconnects_counter.inc()
        logger.info(
            "Reconnecting to feed",
            extra={"url": self.url, "attempt": attempt + 1, "delay_seconds": delay},
        )
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _call_handler(self, name: str) -> None:
        try:
            await getattr(self.handler, name)()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._notify_error(e)

    async def _notify_error(self, error: Exception, payload: str | None = None) -> None:
        category = getattr(error, "category", ErrorCategory.UNKNOWN)
        logger.debug(
            "Feed error routed to handler",
            extra={
                "error": str(error),
                "error_type": type(error).__name__,
                "error_category": category.value,
                "payload_excerpt": payload,
            },
        )
        try:
            await self.handler.on_error(error)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Feed handler on_error raised")

    async def _finish(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._closed_notified:
            return
        self._closed_notified = True
        try:
            await self.handler.on_closed()
        except Exception:
            logger.exception("Feed handler on_closed raised")

    async def close(self) -> None:
        """Stop streaming and notify the handler once."""
        if self._closing.is_set():
            return
        self._closing.set()
        logger.info(
            "Closing feed",
            extra={"url": self.url, "last_event_id": self.last_event_id},
        )
        if self._source is not None:
            await self._source.close()
        if not self._running:
            await self._finish()

    async def __aenter__(self) -> "EventSourceClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()
