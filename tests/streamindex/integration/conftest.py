"""In-memory log and index fakes honouring the consumer, producer and index handle interfaces."""

import json

import pytest

from core.errors.exceptions import SearchIndexError
from core.types import ErrorCategory
from streamindex.common.batch_consumer import partition_offsets
from streamindex.common.types import PipelineMessage
from streamindex.search.client import IndexResponse

TOPIC = "wikimedia_recentchange"
INDEX = "wikimedia"


class InMemoryLog:
    """Partitioned append-only log with a single consumer-group cursor."""

    def __init__(self, topic: str = TOPIC, partitions: int = 1):
        self.topic = topic
        self.records: dict[int, list[bytes | None]] = {p: [] for p in range(partitions)}
        self.committed: dict[int, int] = {p: 0 for p in range(partitions)}
        self.commit_calls: list[dict[str, int]] = []

    def append(self, value: bytes | str | None, partition: int = 0) -> int:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self.records[partition].append(value)
        return len(self.records[partition]) - 1

    def consumer(self, group_id: str = "consumer-opensearch") -> "InMemoryConsumer":
        return InMemoryConsumer(self, group_id)

    def producer(self) -> "InMemoryProducer":
        return InMemoryProducer(self)


class InMemoryConsumer:
    """Group member reading from the last committed offset."""

    def __init__(self, log: InMemoryLog, group_id: str):
        self.log = log
        self.group_id = group_id
        self.positions: dict[int, int] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self.positions = dict(self.log.committed)
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def poll(self, timeout_ms: int, max_records: int | None = None) -> list[PipelineMessage]:
        limit = max_records or 500
        messages = []
        for partition, records in self.log.records.items():
            while self.positions[partition] < len(records) and len(messages) < limit:
                offset = self.positions[partition]
                messages.append(
                    PipelineMessage(
                        topic=self.log.topic,
                        partition=partition,
                        offset=offset,
                        timestamp=0,
                        value=records[offset],
                    )
                )
                self.positions[partition] = offset + 1
        return messages

    async def commit(self, messages: list[PipelineMessage]) -> dict[str, int]:
        committed = {}
        for tp, (_, last) in partition_offsets(messages).items():
            self.log.committed[tp.partition] = last + 1
            committed[f"{tp.topic}:{tp.partition}"] = last + 1
        self.log.commit_calls.append(committed)
        return committed

    def rewind(self, messages: list[PipelineMessage]) -> dict[str, int]:
        rewound = {}
        for tp, (first, _) in partition_offsets(messages).items():
            self.positions[tp.partition] = first
            rewound[f"{tp.topic}:{tp.partition}"] = first
        return rewound


class InMemoryProducer:
    """Producer handle appending straight to an InMemoryLog partition 0."""

    def __init__(self, log: InMemoryLog):
        self.log = log
        self.delivery_failures = 0
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        self._started = True

    async def stop(self) -> None:
        self._started = False

    async def enqueue(self, topic, key, value) -> None:
        assert topic == self.log.topic
        self.log.append(value)


class InMemoryIndex:
    """Document store addressed by id, with an optional failure hook."""

    def __init__(self):
        self.indexes: dict[str, dict[str, dict]] = {}
        self.create_calls = 0
        self.upserts: list[str] = []
        self.fail_ids: set[str] = set()
        self.closed = False

    async def index_exists(self, index: str) -> bool:
        return index in self.indexes

    async def create_index(self, index: str, body=None) -> bool:
        self.create_calls += 1
        if index in self.indexes:
            return False
        self.indexes[index] = {}
        return True

    async def upsert(self, index: str, doc_id: str, payload, content_type: str = "application/json") -> IndexResponse:
        if doc_id in self.fail_ids:
            raise SearchIndexError(
                f"Server error (503): {doc_id}", status_code=503, category=ErrorCategory.TRANSIENT
            )
        docs = self.indexes.setdefault(index, {})
        result = "updated" if doc_id in docs else "created"
        docs[doc_id] = json.loads(payload)
        self.upserts.append(doc_id)
        return IndexResponse(id=doc_id, result=result)

    async def close(self) -> None:
        self.closed = True

    def documents(self, index: str = INDEX) -> dict[str, dict]:
        return self.indexes.get(index, {})


@pytest.fixture
def change_log():
    return InMemoryLog()


@pytest.fixture
def search_index():
    return InMemoryIndex()
