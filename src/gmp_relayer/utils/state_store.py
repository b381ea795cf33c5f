"""
State management for the GMP Relayer.

This module defines the state-store interface shared by the executor, the
retry processor and the compensation engine, and a JSON-file implementation
that persists the processed-event set and the failed-transaction map.

Every mutation runs under a single lock and is written to disk before the
call returns. A failed write rolls the in-memory change back and raises
PersistenceError, so nothing is reported as durable that is not on disk.
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence

from ..errors import PersistenceError
from ..models import (
    Command,
    CompensationState,
    FailedTransaction,
    RelayEvent,
    failure_key,
)

logger = logging.getLogger(__name__)

PROCESSED_EVENTS_FILE = "processed_events.json"
FAILED_TRANSACTIONS_FILE = "failed_transactions.json"


class StateStore(ABC):
    """
    Durable relayer state: processed event ids and failed transactions.

    Implementations must persist every mutation before returning from it.
    """

    def __init__(self) -> None:
        # key -> [lock, holders]; an entry lives only while someone holds or awaits it
        self._command_locks: dict[str, list] = {}

    @asynccontextmanager
    async def command_lock(self, key: str) -> AsyncIterator[None]:
        """Serialise execution attempts for one failure key."""
        entry = self._command_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._command_locks[key]

    @abstractmethod
    async def is_processed(self, event_id: str) -> bool: ...

    @abstractmethod
    async def mark_processed(self, event_id: str) -> None: ...

    @abstractmethod
    async def processed_count(self) -> int: ...

    @abstractmethod
    async def compact(self, retain: int) -> int:
        """Keep only the most recent `retain` processed ids; return how many were dropped."""

    @abstractmethod
    async def get_failure(self, key: str) -> FailedTransaction | None: ...

    @abstractmethod
    async def find_failures(self, command_id: str) -> list[FailedTransaction]: ...

    @abstractmethod
    async def list_failures(self) -> list[FailedTransaction]: ...

    @abstractmethod
    async def record_failure(
        self,
        command_id: str,
        chain: str,
        commands: Sequence[Command],
        source_event: RelayEvent | None,
        error: str,
        max_retries: int,
    ) -> tuple[FailedTransaction, bool]:
        """Upsert a failure; return the record and whether it just became exhausted."""

    @abstractmethod
    async def remove_failure(self, key: str) -> bool:
        """Drop a resolved record; COMPENSATED records are kept and yield False."""

    @abstractmethod
    async def force_exhaust(self, key: str) -> FailedTransaction | None:
        """Move an active record to EXHAUSTED regardless of its retry count."""

    @abstractmethod
    async def claim_compensation(
        self,
        key: str,
        refund: FailedTransaction
    ) -> FailedTransaction | None:
        """
        Move an EXHAUSTED record to COMPENSATED and store its pending refund.

        Both changes are persisted in one write, so a refund that was claimed
        is always left in the store for the retry processor to submit.

        Returns:
            The updated record, or None if it was not EXHAUSTED
        """

    @abstractmethod
    async def prune_compensated(self, max_age: float) -> int:
        """Drop COMPENSATED records older than `max_age` seconds; return how many."""

    @abstractmethod
    def get_stats(self) -> dict: ...


class JsonFileStateStore(StateStore):
    """
    StateStore backed by two JSON documents in a state directory.

    processed_events.json holds an array of event ids, oldest first.
    failed_transactions.json holds an array of [key, FailedTransaction] pairs.
    """

    def __init__(self, state_dir: str | Path, clock: Callable[[], float] = time.time) -> None:
        """
        Initialize the store and load any previously persisted state.

        Args:
            state_dir: Directory holding the two JSON documents
            clock: Time source for failure timestamps
        """
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock

        self._lock = asyncio.Lock()
        # OrderedDict keeps insertion order so compaction can drop the oldest
        self._processed: OrderedDict[str, None] = OrderedDict()
        self._failures: dict[str, FailedTransaction] = {}

        self._load_processed_events()
        self._load_failed_transactions()

    @property
    def processed_path(self) -> Path:
        return self.state_dir / PROCESSED_EVENTS_FILE

    @property
    def failures_path(self) -> Path:
        return self.state_dir / FAILED_TRANSACTIONS_FILE

    def _load_processed_events(self) -> None:
        if not self.processed_path.exists():
            return
        try:
            with self.processed_path.open() as file:
                data = json.load(file)
            self._processed = OrderedDict((event_id, None) for event_id in data)
            logger.info(f"Loaded {len(self._processed)} processed events")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load processed events ({e}), starting fresh")

    def _load_failed_transactions(self) -> None:
        if not self.failures_path.exists():
            return
        try:
            with self.failures_path.open() as file:
                data = json.load(file)
            self._failures = {key: FailedTransaction.from_dict(record) for key, record in data}
            logger.info(f"Loaded {len(self._failures)} failed transactions")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not load failed transactions ({e}), starting fresh")

    def _write_json(self, path: Path, data: Any) -> None:
        """Atomically replace `path` with `data` serialised as JSON."""
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with tmp_path.open("w") as file:
                json.dump(data, file, indent=2)
                file.flush()
                os.fsync(file.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def _save_processed_events(self) -> None:
        self._write_json(self.processed_path, list(self._processed))

    def _save_failed_transactions(self) -> None:
        self._write_json(
            self.failures_path,
            [[key, record.to_dict()] for key, record in self._failures.items()]
        )

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self._processed

    async def mark_processed(self, event_id: str) -> None:
        async with self._lock:
            if event_id in self._processed:
                return
            self._processed[event_id] = None
            try:
                self._save_processed_events()
            except PersistenceError:
                del self._processed[event_id]
                raise

    async def processed_count(self) -> int:
        return len(self._processed)

    async def compact(self, retain: int) -> int:
        async with self._lock:
            excess = len(self._processed) - retain
            if excess <= 0:
                return 0
            snapshot = self._processed.copy()
            for _ in range(excess):
                self._processed.popitem(last=False)
            try:
                self._save_processed_events()
            except PersistenceError:
                self._processed = snapshot
                raise
            logger.info(f"Compacted processed events: dropped {excess}, kept {retain}")
            return excess

    async def get_failure(self, key: str) -> FailedTransaction | None:
        record = self._failures.get(key)
        return replace(record) if record else None

    async def find_failures(self, command_id: str) -> list[FailedTransaction]:
        return [replace(r) for r in self._failures.values() if r.command_id == command_id]

    async def list_failures(self) -> list[FailedTransaction]:
        return [replace(r) for r in self._failures.values()]

    async def record_failure(
        self,
        command_id: str,
        chain: str,
        commands: Sequence[Command],
        source_event: RelayEvent | None,
        error: str,
        max_retries: int,
    ) -> tuple[FailedTransaction, bool]:
        key = failure_key(command_id, chain)
        async with self._lock:
            previous = self._failures.get(key)
            now = self.clock()

            if previous is None:
                record = FailedTransaction(
                    command_id=command_id,
                    destination_chain=chain,
                    commands=list(commands),
                    source_event=source_event,
                    error=error,
                    retry_count=1,
                    max_retries=max_retries,
                    last_attempt_timestamp=now,
                )
            else:
                record = replace(previous, error=error, last_attempt_timestamp=now)
                # Never count past the limit
                if record.is_active and record.retry_count < record.max_retries:
                    record.retry_count += 1

            newly_exhausted = False
            if record.is_active and record.retry_count >= record.max_retries:
                record.state = CompensationState.EXHAUSTED
                newly_exhausted = True

            self._failures[key] = record
            try:
                self._save_failed_transactions()
            except PersistenceError:
                if previous is None:
                    del self._failures[key]
                else:
                    self._failures[key] = previous
                raise

            return replace(record), newly_exhausted

    async def remove_failure(self, key: str) -> bool:
        async with self._lock:
            previous = self._failures.get(key)
            if previous is None or previous.state is CompensationState.COMPENSATED:
                return False
            del self._failures[key]
            try:
                self._save_failed_transactions()
            except PersistenceError:
                self._failures[key] = previous
                raise
            return True

    async def force_exhaust(self, key: str) -> FailedTransaction | None:
        return await self._transition(key, CompensationState.ACTIVE, CompensationState.EXHAUSTED)

    async def claim_compensation(
        self,
        key: str,
        refund: FailedTransaction
    ) -> FailedTransaction | None:
        async with self._lock:
            previous = self._failures.get(key)
            if previous is None or previous.state is not CompensationState.EXHAUSTED:
                return None
            if refund.key in self._failures:
                raise PersistenceError(f"Refund {refund.key} is already stored")

            self._failures[key] = replace(
                previous,
                state=CompensationState.COMPENSATED,
                compensation_id=refund.command_id,
                compensated_at=self.clock()
            )
            self._failures[refund.key] = replace(refund)
            try:
                self._save_failed_transactions()
            except PersistenceError:
                self._failures[key] = previous
                del self._failures[refund.key]
                raise
            return replace(self._failures[key])

    async def prune_compensated(self, max_age: float) -> int:
        async with self._lock:
            cutoff = self.clock() - max_age
            expired = [
                key for key, record in self._failures.items()
                if record.state is CompensationState.COMPENSATED
                and (record.compensated_at or 0.0) <= cutoff
            ]
            if not expired:
                return 0
            snapshot = dict(self._failures)
            for key in expired:
                del self._failures[key]
            try:
                self._save_failed_transactions()
            except PersistenceError:
                self._failures = snapshot
                raise
            logger.info(f"Pruned {len(expired)} compensated transactions")
            return len(expired)

    async def _transition(
        self,
        key: str,
        expected: CompensationState,
        target: CompensationState,
        **changes: Any
    ) -> FailedTransaction | None:
        async with self._lock:
            previous = self._failures.get(key)
            if previous is None or previous.state is not expected:
                return None
            self._failures[key] = replace(previous, state=target, **changes)
            try:
                self._save_failed_transactions()
            except PersistenceError:
                self._failures[key] = previous
                raise
            return replace(self._failures[key])

    def get_stats(self) -> dict:
        """
        Get current store statistics.

        Returns:
            Dictionary with state metrics
        """
        states = [record.state for record in self._failures.values()]
        return {
            'processed_events': len(self._processed),
            'failed_transactions': len(self._failures),
            'exhausted': states.count(CompensationState.EXHAUSTED),
            'compensated': states.count(CompensationState.COMPENSATED),
        }
