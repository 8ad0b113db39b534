"""Search index client."""

from streamindex.search.client import IndexResponse, SearchIndexClient, classify_index_error

__all__ = [
    "IndexResponse",
    "SearchIndexClient",
    "classify_index_error",
]
