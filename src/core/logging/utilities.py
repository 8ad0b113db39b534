"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Example:
        log_with_context(
            logger, logging.INFO, "Document indexed",
            document_id=doc_id,
            duration_ms=elapsed,
            http_status=201,
        )
    """
    exc_info = kwargs.pop("exc_info", None)
    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Extracts error_category from PipelineError subclasses and truncates
    long error messages.

    Example:
        try:
            await client.upsert(index, doc_id, body)
        except SearchIndexError as e:
            log_exception(logger, e, "Upsert failed", document_id=doc_id)
    """
    if kwargs.get("error_category") is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=kwargs)
    else:
        logger.log(level, msg, extra=kwargs)


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    Format standardized cycle output for workers with delta tracking.

    Example:
        >>> format_cycle_output(1, 1200, 34, 50)
        'Cycle 1: processed=1284, succeeded=1200, failed=34, skipped=50'
        >>> format_cycle_output(5, 1200, 34, 50, {"succeeded": 240, "failed": 0, "skipped": 0}, 30)
        'Cycle 5: +240 this cycle | total: 1200 succeeded, 34 failed, 50 skipped | 8.0 msg/s'
    """
    total_processed = succeeded + failed + skipped

    if since_last is not None:
        delta_total = (
            since_last.get("succeeded", 0)
            + since_last.get("failed", 0)
            + since_last.get("skipped", 0)
        )
        rate = delta_total / interval_seconds if interval_seconds > 0 else 0

        total_parts = [f"{succeeded} succeeded"]
        if failed > 0:
            total_parts.append(f"{failed} failed")
        if skipped > 0:
            total_parts.append(f"{skipped} skipped")

        parts = [
            f"+{delta_total} this cycle",
            f"total: {', '.join(total_parts)}",
            f"{rate:.1f} msg/s",
        ]
        return f"Cycle {cycle_count}: {' | '.join(parts)}"

    parts = [
        f"processed={total_processed}",
        f"succeeded={succeeded}",
        f"failed={failed}",
    ]
    if skipped > 0:
        parts.append(f"skipped={skipped}")

    return f"Cycle {cycle_count}: {', '.join(parts)}"


def detect_log_output_mode() -> str:
    """Describe where logs are being sent by inspecting the root handlers."""
    handlers = logging.getLogger().handlers
    if any(isinstance(h, logging.FileHandler) for h in handlers):
        return "file+console"
    return "stdout" if handlers else "console"


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("instance_id", "Instance:     {}"),
    ("input_topic", "Input Topic:  {}"),
    ("output_topic", "Output Topic: {}"),
    ("feed_url", "Feed:         {}"),
    ("index", "Index:        {}"),
    ("metrics_port", "Metrics:      http://localhost:{}"),
    ("log_output_mode", "Log Output:   {}"),
]


def log_startup_banner(
    logger: logging.Logger,
    worker_name: str,
    **fields: Any,
) -> None:
    """Log a compact startup banner with the worker's wiring."""
    lines = ["", "=" * 60, f"  {worker_name}", "=" * 60]
    for key, template in _BANNER_FIELDS:
        value = fields.get(key)
        if value is not None:
            lines.append("  " + template.format(value))
    lines.append("=" * 60)
    logger.info("\n".join(lines))
