"""Periodic statistics logging utility for workers."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from core.logging.utilities import format_cycle_output

logger = logging.getLogger(__name__)

_COUNTERS = ("succeeded", "failed", "skipped")


class PeriodicStatsLogger:
    """
    Periodic statistics logging for workers with delta tracking.

    Workers provide a callback returning extra fields with cumulative
    ``records_succeeded``/``records_failed``/``records_skipped`` counts.
    """

    def __init__(
        self,
        interval_seconds: int,
        get_stats: Callable[[int], dict[str, Any]],
        stage: str,
        worker_id: str,
    ):
        self.interval_seconds = interval_seconds
        self.get_stats = get_stats
        self.stage = stage
        self.worker_id = worker_id
        self._task: asyncio.Task | None = None
        self._cycle_count = 0
        self._previous_stats: dict[str, int] = {}

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Periodic logger already running")
            return

        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @staticmethod
    def _counts(extra: dict[str, Any]) -> dict[str, int]:
        return {key: int(extra.get(f"records_{key}", 0)) for key in _COUNTERS}

    async def _run(self) -> None:
        initial_extra = self.get_stats(0)
        self._previous_stats = self._counts(initial_extra)

        initial_msg = format_cycle_output(
            cycle_count=0,
            succeeded=self._previous_stats["succeeded"],
            failed=self._previous_stats["failed"],
            skipped=self._previous_stats["skipped"],
        )
        logger.info(
            f"{initial_msg} [cycle output every {self.interval_seconds}s]",
            extra={"worker_id": self.worker_id, "stage": self.stage, "stats": initial_extra},
        )

        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self._cycle_count += 1

                extra = self.get_stats(self._cycle_count)
                current = self._counts(extra)
                deltas = {
                    key: current[key] - self._previous_stats.get(key, 0)
                    for key in current
                }
                self._previous_stats = current

                msg = format_cycle_output(
                    cycle_count=self._cycle_count,
                    succeeded=current["succeeded"],
                    failed=current["failed"],
                    skipped=current["skipped"],
                    since_last=deltas,
                    interval_seconds=self.interval_seconds,
                )
                logger.info(
                    msg,
                    extra={
                        "worker_id": self.worker_id,
                        "stage": self.stage,
                        "stats": {**extra, "deltas": deltas},
                    },
                )

        except asyncio.CancelledError:
            logger.debug("Periodic stats logger task cancelled")
            raise
