"""Worker runners: construct handles, start workers, wire shutdown."""

from streamindex.runners.common import execute_worker_with_shutdown
from streamindex.runners.workers import WORKER_RUNNERS, run_indexer, run_relay

__all__ = [
    "WORKER_RUNNERS",
    "execute_worker_with_shutdown",
    "run_indexer",
    "run_relay",
]
