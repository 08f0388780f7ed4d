"""Garbage collector for expired key-value rows.

The durable store has no native expiration, so expired rows accumulate
until swept. Each sweep is time-boxed: it checks its budget between
batches and stops starting new ones once the budget is spent, leaving the
rest for the next run.

Pages are fetched by cursor instead of re-running the same filter. The
expiry query may lag recent deletes by several seconds, so re-querying
from the start would keep returning rows that are already gone. Cache
entries are left alone; their TTL never outlives the row's expiration.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tieredstore.core.database import Database
from tieredstore.core.logging import get_logger, log_execution_time

logger = get_logger(__name__)

DEFAULT_BUDGET = 50.0         # seconds
DEFAULT_LEEWAY = 24 * 3600.0  # seconds past expiration before a row may go
DEFAULT_BATCH_SIZE = 400      # typical backend batch-delete limit


@dataclass
class SweepResult:
    """Outcome of one sweep.

    ``timed_out`` is not a failure: the budget ran out and the remaining
    rows will be picked up next time.
    """
    deleted: int = 0
    timed_out: bool = False
    batches: int = 0


class KVGarbageCollector:
    """Deletes expired KV rows in cursor-paginated, time-boxed batches."""

    def __init__(
        self,
        database: Database,
        budget: float = DEFAULT_BUDGET,
        leeway: float = DEFAULT_LEEWAY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        interval: int = 3600,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.monotonic,
    ):
        """Initialize the collector.

        Args:
            database: Durable store holding the KV rows
            budget: Wall-clock seconds one sweep may spend (math.inf for no limit)
            leeway: Seconds past expiration before a row is eligible
            batch_size: Rows per page and per batch delete
            interval: Seconds between sweeps when running in the background
            clock: Source of the current Unix time, for the expiry cutoff
            timer: Monotonic clock used to enforce the budget
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.database = database
        self.budget = budget
        self.leeway = leeway
        self.batch_size = batch_size
        self.interval = interval
        self.clock = clock
        self.timer = timer
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def sweep_expired(self, budget: Optional[float] = None,
                            leeway: Optional[float] = None) -> SweepResult:
        """Delete rows that expired more than ``leeway`` seconds ago.

        Storage errors propagate; rows deleted before the error stay deleted.
        """
        budget = self.budget if budget is None else budget
        leeway = self.leeway if leeway is None else leeway

        started = self.timer()
        cutoff = self.clock() - leeway
        result = SweepResult()
        cursor = None

        while True:
            if self.timer() - started >= budget:
                result.timed_out = True
                logger.warning("KV sweep ran out of time",
                               deleted=result.deleted, batches=result.batches, budget=budget)
                break

            keys, cursor = await self.database.query_expired_kv_keys(
                cutoff, self.batch_size, cursor
            )
            if keys:
                result.deleted += await self.database.delete_kv_keys(keys)
                result.batches += 1

            if len(keys) < self.batch_size:
                break

        if result.deleted:
            log_execution_time(logger, "kv_sweep", started, self.timer(),
                               deleted=result.deleted, batches=result.batches,
                               timed_out=result.timed_out)
        return result

    async def start(self) -> None:
        """Start sweeping in the background every ``interval`` seconds."""
        if self._running:
            logger.warning("KV garbage collector already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("KV garbage collector started",
                    interval=self.interval, budget=self.budget, leeway=self.leeway)

    async def stop(self) -> None:
        """Stop the background sweep gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("KV garbage collector stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error("KV sweep failed", error=str(e))
            await asyncio.sleep(self.interval)
