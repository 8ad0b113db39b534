"""Batch indexer: Kafka change events to search index upserts."""

from streamindex.indexer.identity import ChangeEvent, DocumentIdError, extract_document_id
from streamindex.indexer.worker import BatchIndexer, CycleReport, Failed, Indexed, Skipped

__all__ = [
    "BatchIndexer",
    "ChangeEvent",
    "CycleReport",
    "DocumentIdError",
    "Failed",
    "Indexed",
    "Skipped",
    "extract_document_id",
]
