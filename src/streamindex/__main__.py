"""Change feed relay and batch indexer orchestration. Use --help for usage."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import start_http_server

from config import load_config
from core.logging.setup import setup_logging
from core.logging.utilities import detect_log_output_mode, log_startup_banner
from core.utils import generate_worker_id
from streamindex.runners.workers import WORKER_RUNNERS

# Project root directory (where .env file is located)
# __main__.py is at src/streamindex/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

WORKER_STAGES = list(WORKER_RUNNERS.keys())

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers; workers finish their current cycle before exiting
_shutdown_event: asyncio.Event | None = None


def get_shutdown_event() -> asyncio.Event:
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay a change feed into Kafka and index it into OpenSearch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run relay and indexer in one process
    python -m streamindex

    # Run only the indexer
    python -m streamindex --worker indexer

    # Use a different config file and metrics port
    python -m streamindex --config ./config.yaml --metrics-port 9090
        """,
    )

    parser.add_argument(
        "--worker",
        choices=WORKER_STAGES + ["all"],
        default="all",
        help="Which worker(s) to run (default: all)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: STREAMINDEX_CONFIG env var or packaged config)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server, 0 to disable (default: 8000)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    return parser.parse_args(argv)


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    import socket

    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise
        logger.info(
            "Port already in use, finding available port",
            extra={"preferred_port": preferred_port},
        )
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]

        start_http_server(available_port)
        return available_port


def setup_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """Set up signal handlers for graceful shutdown.

    First CTRL+C: sets the shutdown event; the indexer finishes its cycle and
    the relay drains its producer.
    Second CTRL+C: forces immediate shutdown by cancelling all tasks.
    Note: Signal handlers not supported on Windows - KeyboardInterrupt used instead."""

    def handle_signal(sig):
        logger.info("Received signal, initiating graceful shutdown", extra={"signal": sig.name})
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


async def run_workers(worker: str, config, shutdown_event: asyncio.Event) -> None:
    """Run one worker, or both side by side.

    With ``all``, a fatal error in one worker triggers shutdown of the other
    and is re-raised once both have stopped.
    """
    names = WORKER_STAGES if worker == "all" else [worker]
    tasks = [
        asyncio.create_task(WORKER_RUNNERS[name](config, shutdown_event), name=name)
        for name in names
    ]

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failed = [t for t in done if not t.cancelled() and t.exception() is not None]
        if failed and pending:
            logger.error(
                "Worker failed, stopping remaining workers",
                extra={"error": str(failed[0].exception())},
            )
            shutdown_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        if failed:
            raise failed[0].exception()
    except asyncio.CancelledError:
        logger.info("Workers cancelled, shutting down...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _setup_environment(argv: list[str] | None = None):
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)
    worker_id = os.getenv("WORKER_ID") or generate_worker_id(args.worker)
    return args, worker_id


def _setup_logging(args, worker_id: str) -> bool:
    log_level = getattr(logging, args.log_level)
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")
    log_to_stdout = args.log_to_stdout or os.getenv("LOG_TO_STDOUT", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR") or "logs")

    setup_logging(
        name="streamindex",
        stage=args.worker,
        log_dir=log_dir,
        json_format=json_logs,
        console_level=log_level,
        worker_id=worker_id,
        log_to_stdout=log_to_stdout,
    )
    return log_to_stdout


def main(argv: list[str] | None = None) -> int:
    global logger

    args, worker_id = _setup_environment(argv)
    _setup_logging(args, worker_id)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config)
    except (ValueError, FileNotFoundError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    metrics_port = None
    if args.metrics_port:
        metrics_port = start_metrics_server(args.metrics_port)

    log_startup_banner(
        logger,
        f"streamindex ({args.worker})",
        instance_id=worker_id,
        input_topic=config.get_topic() if args.worker != "relay" else None,
        output_topic=config.get_topic() if args.worker != "indexer" else None,
        feed_url=config.feed.url if args.worker != "indexer" else None,
        index=config.search.index if args.worker != "relay" else None,
        metrics_port=metrics_port,
        log_output_mode=detect_log_output_mode(),
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)
    shutdown_event = get_shutdown_event()

    exit_code = 0
    try:
        loop.run_until_complete(run_workers(args.worker, config, shutdown_event))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception as e:
        logger.error("Fatal error", extra={"error": str(e), "error_type": type(e).__name__})
        exit_code = 1
    finally:
        loop.close()
        logger.info("Shutdown complete")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
