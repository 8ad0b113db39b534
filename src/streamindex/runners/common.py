"""Common worker execution patterns and utilities.

Provides a reusable template for running workers with consistent:
- Startup retry
- Shutdown handling
- Logging context
- Resource cleanup
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable

from core.logging.context import set_log_context

logger = logging.getLogger(__name__)

# Startup retry configuration (overridable via env vars)
DEFAULT_STARTUP_RETRIES = 5
DEFAULT_STARTUP_BACKOFF_BASE = 5  # seconds


async def _cleanup_watcher_task(task: asyncio.Task) -> None:
    """Cancel and await watcher task, suppressing expected exceptions.

    Handles CancelledError and RuntimeError (when event loop closed during shutdown).
    """
    try:
        task.cancel()
        await task
    except (asyncio.CancelledError, RuntimeError):
        pass


async def _start_with_retry(
    start_fn: Callable[[], Awaitable[None]],
    label: str,
    max_retries: int | None = None,
    backoff_base: float | None = None,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Retry an async start function with linear backoff.

    On exhaustion, re-raises the last exception so startup failure is fatal.

    Args:
        start_fn: Async callable (e.g. indexer.start)
        label: Human-readable label for log messages
        max_retries: Number of attempts (default: 5, env: STARTUP_MAX_RETRIES)
        backoff_base: Base seconds for backoff (default: 5, env: STARTUP_BACKOFF_SECONDS)
        shutdown_event: If set, skip retries during shutdown
    """
    max_retries = max_retries or int(
        os.getenv("STARTUP_MAX_RETRIES", str(DEFAULT_STARTUP_RETRIES))
    )
    if backoff_base is None:
        backoff_base = float(os.getenv("STARTUP_BACKOFF_SECONDS", str(DEFAULT_STARTUP_BACKOFF_BASE)))

    for attempt in range(1, max_retries + 1):
        try:
            await start_fn()
            return
        except Exception as e:
            if shutdown_event and shutdown_event.is_set():
                logger.info(f"Shutdown in progress, not retrying {label}")
                raise
            if attempt == max_retries:
                logger.error(
                    f"Failed to start {label} after {max_retries} attempts, giving up",
                    extra={"error": str(e), "total_attempts": max_retries},
                )
                raise
            delay = backoff_base * attempt
            logger.warning(
                f"Failed to start {label} (attempt {attempt}/{max_retries}), "
                f"retrying in {delay}s",
                extra={"error": str(e), "attempt": attempt, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)


async def execute_worker_with_shutdown(
    worker_instance,
    stage_name: str,
    shutdown_event: asyncio.Event,
    start_fn: Callable[[], Awaitable[None]] | None = None,
    run_fn: Callable[[], Awaitable[None]] | None = None,
    worker_id: str | None = None,
) -> None:
    """Start a worker, run it until it finishes or shutdown is requested.

    Errors raised by the worker are re-raised unless shutdown is already
    in progress; ``stop()`` is always awaited exactly once.

    Args:
        worker_instance: Worker with start(), stop() and a run coroutine
        stage_name: Name for logging context
        shutdown_event: Event to signal graceful shutdown
        start_fn: Start coroutine factory (default: worker_instance.start)
        run_fn: Run coroutine factory (default: worker_instance.run)
        worker_id: Worker identifier for logging context
    """
    set_log_context(stage=stage_name, worker_id=worker_id)
    logger.info("Starting %s...", stage_name)

    start_fn = start_fn or worker_instance.start
    run_fn = run_fn or worker_instance.run
    worker_stopped = False

    async def shutdown_watcher():
        nonlocal worker_stopped
        await shutdown_event.wait()
        logger.info(f"Shutdown signal received, stopping {stage_name}...")
        worker_stopped = True
        await worker_instance.stop()

    watcher_task = asyncio.create_task(shutdown_watcher(), name=f"{stage_name}-shutdown-watcher")

    try:
        await _start_with_retry(start_fn, stage_name, shutdown_event=shutdown_event)
        if not shutdown_event.is_set():
            await run_fn()
    except Exception:
        if not shutdown_event.is_set():
            logger.exception(f"{stage_name} failed")
            raise
    finally:
        if worker_stopped:
            # stop() is already running in the watcher; let it finish
            try:
                await watcher_task
            except Exception:
                logger.exception(f"Error stopping {stage_name}")
        else:
            await _cleanup_watcher_task(watcher_task)
            worker_stopped = True
            await worker_instance.stop()
        logger.info("%s stopped", stage_name)
