"""
Retry processing for failed command executions.

A periodic sweep re-executes active failure records once their backoff has
elapsed, and hands exhausted token-bearing records to the compensation engine
if nothing has compensated them yet.
"""

import asyncio
import logging
import time
from typing import Any, Callable

from .command_executor import CommandExecutor
from .compensation import CompensationEngine
from .config import RetryConfig
from .models import CompensationState, FailedTransaction
from .utils.state_store import StateStore

logger = logging.getLogger(__name__)


def backoff_delay(retry_count: int, base_delay: float = 60.0, max_delay: float = 600.0) -> float:
    """Seconds to wait after the `retry_count`-th failure: base * 2**count, capped."""
    return min(base_delay * (2 ** max(retry_count, 0)), max_delay)


class RetryProcessor:
    """Re-executes failed transactions with exponential backoff."""

    def __init__(
        self,
        state_store: StateStore,
        executor: CommandExecutor,
        compensation: CompensationEngine,
        retry: RetryConfig,
        clock: Callable[[], float] = time.time
    ) -> None:
        """
        Initialize the RetryProcessor.

        Args:
            state_store: Store holding failure records
            executor: Executor used for re-attempts
            compensation: Engine that refunds exhausted token transfers
            retry: Retry limits and backoff settings
            clock: Time source (seconds)
        """
        self.state_store = state_store
        self.executor = executor
        self.compensation = compensation
        self.retry = retry
        self.clock = clock

        self.retries_attempted = 0
        self.retries_succeeded = 0
        self.sweeps_completed = 0

    def is_due(self, record: FailedTransaction) -> bool:
        """True when the record's backoff window has passed."""
        delay = backoff_delay(record.retry_count, self.retry.base_delay, self.retry.max_delay)
        return self.clock() - record.last_attempt_timestamp >= delay

    async def sweep(self) -> int:
        """
        Run one pass over all failure records.

        Returns:
            Number of re-execution attempts made
        """
        attempts = 0
        for record in await self.state_store.list_failures():
            try:
                if record.state is CompensationState.ACTIVE:
                    if not self.is_due(record):
                        continue
                    attempts += 1
                    await self._retry(record)
                elif record.state is CompensationState.EXHAUSTED:
                    await self._compensate_exhausted(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error processing failed transaction {record.key}: {e}")

        self.sweeps_completed += 1
        return attempts

    async def _retry(self, record: FailedTransaction) -> None:
        logger.info(
            f"Retrying failed transaction {record.key} "
            f"(attempt {record.retry_count + 1}/{record.max_retries})"
        )
        self.retries_attempted += 1

        result = await self.executor.execute(
            record.destination_chain,
            record.command_id,
            record.commands,
            record.source_event,
            expected=record
        )
        if result.success:
            self.retries_succeeded += 1

    async def _compensate_exhausted(self, record: FailedTransaction) -> None:
        if record.source_event is None:
            logger.error(
                f"Failed transaction {record.key} is exhausted and has no source event "
                "to refund; operator action required"
            )
            return

        if not record.source_event.carries_tokens:
            logger.warning(f"Failed transaction {record.key} is exhausted with no tokens to refund")
            return

        await self.compensation.compensate(record)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Sweep every `sweep_interval` seconds until shutdown_event is set."""
        logger.info(f"Retry processor started (sweep every {self.retry.sweep_interval}s)")
        while not shutdown_event.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Retry sweep failed: {e}")

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.retry.sweep_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Retry processor stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "retries_attempted": self.retries_attempted,
            "retries_succeeded": self.retries_succeeded,
            "sweeps_completed": self.sweeps_completed,
        }
