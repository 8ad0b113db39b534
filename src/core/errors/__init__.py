"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    AuthError,
    FeedError,
    IndexerFatalError,
    LogTransportError,
    OffsetCommitError,
    PermanentError,
    PipelineError,
    SearchIndexError,
    ThrottlingError,
    TransientError,
    classify_exception,
    classify_http_status,
    is_retryable_error,
    wrap_exception,
)
from core.types import ErrorCategory

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "AuthError",
    "TransientError",
    "ThrottlingError",
    "PermanentError",
    # Domain errors
    "LogTransportError",
    "OffsetCommitError",
    "SearchIndexError",
    "FeedError",
    "IndexerFatalError",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "wrap_exception",
    "is_retryable_error",
]
