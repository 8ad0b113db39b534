"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to make retry decisions:
- Transient errors: retry with exponential backoff and equal jitter
- Throttled requests: honour the server-provided retry_after when present
- Auth and permanent errors: fail immediately (no retry)
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

from core.errors.exceptions import (
    PipelineError,
    SearchIndexError,
    ThrottlingError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory

logger = logging.getLogger(__name__)


def _server_retry_after(error: Exception | None) -> float | None:
    """Seconds the server asked us to wait (ThrottlingError, 429 from the index)."""
    if isinstance(error, (ThrottlingError, SearchIndexError)):
        return error.retry_after
    return None


def _error_category(wrapped: Exception) -> str:
    if isinstance(wrapped, PipelineError):
        return wrapped.category.value
    return classify_exception(wrapped).value


def _log_retry_failure(
    func_name: str,
    wrapped: Exception,
    e: Exception,
    error_category: str,
    config: "RetryConfig",
) -> None:
    """Log permanent-error or max-retries-exhausted."""
    error_type = type(wrapped).__name__
    if isinstance(wrapped, PipelineError) and not wrapped.is_retryable:
        logger.warning(
            "Non-retryable error for %s, not retrying: %s",
            func_name,
            str(e)[:200],
            extra={
                "operation": func_name,
                "error_type": error_type,
                "error_category": error_category,
                "error_message": str(e)[:200],
            },
        )
        return

    logger.error(
        "Max retries exhausted for %s: %s",
        func_name,
        str(e)[:200],
        extra={
            "operation": func_name,
            "error_type": error_type,
            "error_category": error_category,
            "max_attempts": config.max_attempts,
            "error_message": str(e)[:200],
        },
    )


def _log_retry_attempt(
    func_name: str,
    attempt: int,
    config: "RetryConfig",
    error_category: str,
    delay: float,
    e: Exception,
    wrapped: Exception,
) -> None:
    log_extras: dict[str, object] = {
        "operation": func_name,
        "attempt": attempt + 1,
        "max_attempts": config.max_attempts,
        "error_category": error_category,
        "delay_seconds": round(delay, 2),
        "error_message": str(e)[:200],
    }

    server_delay = _server_retry_after(wrapped)
    if config.respect_retry_after and server_delay is not None:
        log_extras["server_retry_after"] = server_delay
        log_extras["delay_source"] = "server"
    else:
        log_extras["delay_source"] = "exponential_backoff"

    logger.warning("Retryable error for %s, will retry", func_name, extra=log_extras)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # If True, wait the server-provided retry_after when the error carries one
    respect_retry_after: bool = True

    # Exception types that are never retried regardless of classification
    never_retry: set[type[Exception]] = field(default_factory=set)

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        # bool('false') would be True
        if not isinstance(self.respect_retry_after, bool):
            self.respect_retry_after = str(self.respect_retry_after).lower() in (
                "true",
                "1",
                "yes",
            )

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryConfig":
        data = data or {}
        return cls(
            max_attempts=data.get("max_attempts", cls.max_attempts),
            base_delay=data.get("base_delay", cls.base_delay),
            max_delay=data.get("max_delay", cls.max_delay),
            exponential_base=data.get("exponential_base", cls.exponential_base),
            respect_retry_after=data.get("respect_retry_after", True),
        )

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """
        Calculate delay with equal jitter to prevent thundering herd.

        Args:
            attempt: 0-indexed attempt number
            error: Optional exception carrying a server retry_after

        Returns:
            Delay in seconds
        """
        server_delay = _server_retry_after(error)
        if self.respect_retry_after and server_delay:
            return min(server_delay, self.max_delay)

        base_delay = self.base_delay * (self.exponential_base**attempt)

        # Equal jitter: half fixed, half random
        jitter = random.uniform(0, base_delay / 2)
        delay = (base_delay / 2) + jitter

        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if error should be retried.

        Args:
            error: The exception that occurred
            attempt: 0-indexed current attempt

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts - 1:
            return False

        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False

        if isinstance(error, PipelineError):
            return error.is_retryable

        return classify_exception(error) in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )


DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)


def with_retry_async(
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    wrap_errors: bool = True,
):
    """
    Decorator for retrying async functions with backoff.

    Args:
        config: Retry configuration (defaults to DEFAULT_RETRY)
        on_retry: Callback before each retry (error, attempt, delay)
        wrap_errors: If True, wrap unknown exceptions in PipelineError

    Usage:
        @with_retry_async(config=RetryConfig(max_attempts=5))
        async def fetch():
            ...
    """
    if config is None:
        config = DEFAULT_RETRY

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_error: Exception | None = None

            for attempt in range(config.max_attempts):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            "Retry succeeded for %s after %d attempts",
                            func.__name__,
                            attempt + 1,
                            extra={
                                "operation": func.__name__,
                                "attempt": attempt + 1,
                                "total_attempts": config.max_attempts,
                            },
                        )

                    return result

                except Exception as e:
                    last_error = e
                    wrapped = (
                        wrap_exception(e)
                        if wrap_errors and not isinstance(e, PipelineError)
                        else e
                    )
                    error_category = _error_category(wrapped)

                    if not config.should_retry(wrapped, attempt):
                        _log_retry_failure(
                            func.__name__, wrapped, e, error_category, config
                        )
                        if wrap_errors and wrapped is not e:
                            raise wrapped from e
                        raise

                    delay = config.get_delay(attempt, wrapped)
                    _log_retry_attempt(
                        func.__name__, attempt, config, error_category,
                        delay, e, wrapped,
                    )

                    if on_retry:
                        try:
                            on_retry(wrapped, attempt, delay)
                        except Exception as cb_err:
                            logger.warning(
                                "Error in on_retry callback for %s: %s",
                                func.__name__,
                                str(cb_err)[:100],
                            )

                    await asyncio.sleep(delay)

            if last_error:
                raise last_error

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
