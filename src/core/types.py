"""
Core types shared across modules.

This module provides the error classification enum used by the exception
hierarchy, the retry helpers and the transport clients.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., network timeouts, 429/503 errors)
        AUTH: Authentication failures (e.g., 401 from the search index)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., malformed payloads, 400/404 responses)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = ["ErrorCategory"]
