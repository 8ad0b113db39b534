"""
Core library: infrastructure-agnostic components shared by the workers.

Modules:
    errors      - Error classification and exception hierarchy
    resilience  - Retry with backoff
    logging     - Structured JSON logging with context propagation
    utils       - Worker ids and JSON helpers
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
