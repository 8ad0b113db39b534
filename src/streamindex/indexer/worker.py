"""
Batch indexer - consumes change events and upserts them into the search index.

Each cycle runs strictly in sequence:
1. POLLING: fetch a batch across the assigned partitions (empty is fine)
2. INDEXING: upsert every record, in received order, under a stable id
3. COMMITTING: commit the batch offsets, only if no upsert failed

A record without a document id is skipped and does not block the commit.
A failed upsert does: the batch is rewound and redelivered on the next
poll. Because upserts are addressed by a stable id, indexing a record
again only overwrites it with the same content.

Consumer group: consumer-opensearch
Input topic: wikimedia_recentchange
Output index: wikimedia
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Union

from core.errors.exceptions import (
    IndexerFatalError,
    LogTransportError,
    OffsetCommitError,
    SearchIndexError,
)
from core.logging.context import set_log_context
from core.logging.message_context import MessageLogContext
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.setup import generate_cycle_id
from core.logging.utilities import log_exception
from streamindex.common.metrics import (
    commit_duration_seconds,
    documents_indexed_counter,
    record_cycle,
    records_skipped_counter,
)
from streamindex.common.types import PipelineMessage
from streamindex.feed.client import payload_excerpt
from streamindex.indexer.identity import (
    ID_STRATEGY_EVENT,
    DocumentIdError,
    extract_document_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Indexed:
    doc_id: str
    result: str = ""


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: Exception


RecordOutcome = Union[Indexed, Skipped, Failed]


@dataclass
class CycleReport:
    """Outcome of one poll/index/commit cycle."""

    messages: list[PipelineMessage] = field(default_factory=list)
    outcomes: list[RecordOutcome] = field(default_factory=list)
    committed: dict[str, int] = field(default_factory=dict)
    error: Exception | None = None

    def add(self, outcome: RecordOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def indexed(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Indexed))

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Skipped))

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Failed))

    @property
    def should_commit(self) -> bool:
        """True when every record was indexed or skipped."""
        return bool(self.messages) and self.error is None and self.failed == 0

    @property
    def is_failure(self) -> bool:
        return self.error is not None or self.failed > 0


class BatchIndexer:
    """
    Poll/index/commit loop over a consumer handle and a search index handle.

    Both handles are constructed by the caller and owned by this instance
    from ``start()`` until ``stop()``.

    Usage:
        >>> indexer = BatchIndexer(consumer, index_client, "wikimedia")
        >>> await indexer.start()
        >>> await indexer.run()
    """

    WORKER_NAME = "indexer"

    # Cycle output configuration
    CYCLE_LOG_INTERVAL_SECONDS = 30

    DEFAULT_POLL_TIMEOUT_MS = 3000
    DEFAULT_BATCH_SIZE = 500
    DEFAULT_MAX_FAILED_CYCLES = 10
    DEFAULT_FAILURE_BACKOFF_SECONDS = 1.0
    DEFAULT_MAX_FAILURE_BACKOFF_SECONDS = 30.0

    def __init__(
        self,
        consumer,
        index_client,
        index: str,
        processing_config: dict[str, Any] | None = None,
        index_body: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ):
        self.consumer = consumer
        self.index_client = index_client
        self.index = index
        self.index_body = index_body or {}
        self.worker_id = worker_id or self.WORKER_NAME

        processing_config = processing_config or {}
        self.batch_size = int(processing_config.get("batch_size", self.DEFAULT_BATCH_SIZE))
        self.poll_timeout_ms = int(processing_config.get("poll_timeout_ms", self.DEFAULT_POLL_TIMEOUT_MS))
        self.id_strategy = processing_config.get("id_strategy", ID_STRATEGY_EVENT)
        self.content_type = processing_config.get("content_type", "application/json")
        self.max_failed_cycles = int(
            processing_config.get("max_failed_cycles", self.DEFAULT_MAX_FAILED_CYCLES)
        )
        self.failure_backoff_seconds = float(
            processing_config.get("failure_backoff_seconds", self.DEFAULT_FAILURE_BACKOFF_SECONDS)
        )
        self.max_failure_backoff_seconds = float(
            processing_config.get("max_failure_backoff_seconds", self.DEFAULT_MAX_FAILURE_BACKOFF_SECONDS)
        )
        self.stats_interval_seconds = processing_config.get(
            "stats_interval_seconds", self.CYCLE_LOG_INTERVAL_SECONDS
        )

        self._started = False
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._stats_logger: PeriodicStatsLogger | None = None
        self._consecutive_failures = 0

        self._records_indexed = 0
        self._records_skipped = 0
        self._records_failed = 0
        self._cycles_committed = 0
        self._cycles_failed = 0

        logger.info(
            "Initialized batch indexer",
            extra={
                "index": index,
                "id_strategy": self.id_strategy,
                "batch_size": self.batch_size,
            },
        )

    @property
    def group_id(self) -> str:
        return getattr(self.consumer, "group_id", "")

    async def start(self) -> None:
        """Join the consumer group and make sure the target index exists.

        Any failure is fatal: the consumer is stopped again and the error
        propagates to the caller.
        """
        if self._started:
            logger.warning("Indexer already started, ignoring duplicate start call")
            return

        set_log_context(stage=self.WORKER_NAME, worker_id=self.worker_id)
        logger.info("Starting batch indexer", extra={"index": self.index})

        await self.consumer.start()
        try:
            if await self.index_client.index_exists(self.index):
                logger.info("Index already exists", extra={"index": self.index})
            else:
                await self.index_client.create_index(self.index, self.index_body)
        except Exception:
            await self.consumer.stop()
            raise

        self._started = True
        self._stop_event.clear()

        self._stats_logger = PeriodicStatsLogger(
            interval_seconds=self.stats_interval_seconds,
            get_stats=self._get_cycle_stats,
            stage=self.WORKER_NAME,
            worker_id=self.worker_id,
        )
        self._stats_logger.start()

        logger.info(
            "Batch indexer started",
            extra={"index": self.index, "group_id": self.group_id, "id_strategy": self.id_strategy},
        )

    async def run(self) -> None:
        """Run cycles until ``stop()``.

        Raises IndexerFatalError after ``max_failed_cycles`` consecutive
        failed cycles.
        """
        if not self._started:
            raise RuntimeError("Indexer not started. Call start() first.")

        while not self._stop_event.is_set():
            report = await self.run_cycle()

            if not report.is_failure:
                self._consecutive_failures = 0
                continue

            self._consecutive_failures += 1
            if self._consecutive_failures >= self.max_failed_cycles:
                logger.critical(
                    "Giving up after repeated failed cycles",
                    extra={"failed_cycles": self._consecutive_failures, "index": self.index},
                )
                raise IndexerFatalError(
                    f"{self._consecutive_failures} consecutive indexing cycles failed",
                    cause=report.error,
                    context={"index": self.index, "group_id": self.group_id},
                )

            await self._backoff()

    async def run_cycle(self) -> CycleReport:
        """Poll one batch, index it and commit it if nothing failed."""
        async with self._cycle_lock:
            report = CycleReport()

            try:
                report.messages = await self.consumer.poll(self.poll_timeout_ms, self.batch_size)
            except LogTransportError as e:
                report.error = e
                self._cycles_failed += 1
                record_cycle(self.group_id, "failed")
                log_exception(logger, e, "Poll failed", level=logging.WARNING, include_traceback=False)
                return report

            if not report.messages:
                record_cycle(self.group_id, "empty")
                return report

            set_log_context(cycle_id=generate_cycle_id())
            start_time = time.perf_counter()

            for message in report.messages:
                report.add(await self._index_record(message))

            if report.should_commit:
                await self._commit(report)
            else:
                self._fail_cycle(report, "Indexing cycle had failed upserts, not committing")

            logger.info(
                "Indexing cycle complete" if not report.is_failure else "Indexing cycle failed",
                extra={
                    "batch_size": len(report.messages),
                    "records_indexed": report.indexed,
                    "records_skipped": report.skipped,
                    "records_failed": report.failed,
                    "offsets": report.committed or None,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                },
            )
            set_log_context(cycle_id="")
            return report

    async def _index_record(self, message: PipelineMessage) -> RecordOutcome:
        with MessageLogContext(
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            consumer_group=self.group_id,
        ):
            try:
                if message.value is None:
                    raise DocumentIdError("empty_payload")
                doc_id = extract_document_id(message, self.id_strategy)
            except DocumentIdError as e:
                self._records_skipped += 1
                records_skipped_counter.labels(index=self.index, reason=e.reason).inc()
                logger.warning(
                    "Skipping record without document id",
                    extra={
                        "id_strategy": self.id_strategy,
                        "error": str(e),
                        "payload_excerpt": payload_excerpt(
                            (message.value or b"").decode("utf-8", errors="replace")
                        ),
                    },
                )
                return Skipped(e.reason)

            try:
                response = await self.index_client.upsert(
                    self.index, doc_id, message.value, content_type=self.content_type
                )
            except SearchIndexError as e:
                self._records_failed += 1
                log_exception(
                    logger,
                    e,
                    "Upsert failed",
                    include_traceback=False,
                    document_id=doc_id,
                    index=self.index,
                    status_code=e.status_code,
                )
                return Failed(e)

            self._records_indexed += 1
            documents_indexed_counter.labels(index=self.index).inc()
            logger.debug(
                "Document indexed",
                extra={"document_id": response.id, "index": self.index, "state": response.result},
            )
            return Indexed(response.id, response.result)

    async def _commit(self, report: CycleReport) -> None:
        start_time = time.perf_counter()
        try:
            report.committed = await self.consumer.commit(report.messages)
        except OffsetCommitError as e:
            report.error = e
            logger.critical(
                "Offset commit failed, batch will be redelivered",
                extra={
                    "group_id": self.group_id,
                    "offsets": e.offsets,
                    "error_message": str(e)[:500],
                },
            )
            self._fail_cycle(report, None)
            return
        finally:
            commit_duration_seconds.labels(consumer_group=self.group_id).observe(
                time.perf_counter() - start_time
            )

        self._cycles_committed += 1
        record_cycle(self.group_id, "committed")

    def _fail_cycle(self, report: CycleReport, message: str | None) -> None:
        self._cycles_failed += 1
        record_cycle(self.group_id, "failed")
        if message:
            logger.warning(
                message,
                extra={"records_failed": report.failed, "batch_size": len(report.messages)},
            )
        if self.consumer.is_running:
            self.consumer.rewind(report.messages)

    async def _backoff(self) -> None:
        delay = min(
            self.failure_backoff_seconds * (2 ** (self._consecutive_failures - 1)),
            self.max_failure_backoff_seconds,
        )
        logger.info(
            "Backing off after failed cycle",
            extra={"failed_cycles": self._consecutive_failures, "delay_seconds": delay},
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        """Finish the in-flight cycle, then release both handles.

        Nothing is committed here; an interrupted batch is redelivered.
        """
        logger.info("Stopping batch indexer")
        self._stop_event.set()

        # Waits for a running cycle to commit or rewind
        async with self._cycle_lock:
            self._started = False

        if self._stats_logger is not None:
            await self._stats_logger.stop()
            self._stats_logger = None

        try:
            await self.consumer.stop()
        finally:
            await self.index_client.close()

        logger.info("Batch indexer stopped", extra=self._get_cycle_stats(0))

    def _get_cycle_stats(self, cycle_count: int) -> dict[str, Any]:
        return {
            "records_succeeded": self._records_indexed,
            "records_failed": self._records_failed,
            "records_skipped": self._records_skipped,
            "records_indexed": self._records_indexed,
            "cycles_committed": self._cycles_committed,
            "cycles_failed": self._cycles_failed,
        }

    @property
    def is_running(self) -> bool:
        return self._started and not self._stop_event.is_set()


__all__ = [
    "BatchIndexer",
    "CycleReport",
    "Failed",
    "Indexed",
    "RecordOutcome",
    "Skipped",
]
