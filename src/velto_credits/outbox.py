"""Ordered writer for credit records headed to the document store.

Writes are local-first: the ledger's in-memory state and cache are already
updated when a record is submitted here. Every remote write for a record goes
through the outbox, one at a time and newest last, so an older snapshot can
never land on top of a newer one. Failed writes stay queued and are retried,
so dropped writes stay visible instead of vanishing.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from velto_credits.sentry import capture_exception
from velto_credits.store import DocumentStore

logger = structlog.get_logger()

RecordKey = tuple[str, str]


@dataclass
class PendingWrite:
    """The newest unsent snapshot of one record."""

    collection: str
    record_id: str
    data: dict[str, Any]
    attempts: int = 0
    last_error: str | None = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class RemoteWriteOutbox:
    """Coalescing, per-record ordered write queue for the document store.

    Only the newest snapshot per (collection, record id) is kept; each snapshot
    carries the full record, so an older one has nothing left to add. Sends for
    one record are serialized by a per-record lock shared by submit() and flush().
    """

    def __init__(
        self,
        store: DocumentStore,
        max_pending: int = 500,
        flush_interval: float = 30.0,
        max_attempts: int = 5,
    ) -> None:
        """Initialize the outbox.

        Args:
            store: Document store to write to
            max_pending: Records kept before new ones are dropped
            flush_interval: Seconds between automatic retries
            max_attempts: Failed sends before a snapshot is given up on
        """
        self.store = store
        self.max_pending = max_pending
        self.flush_interval = flush_interval
        self.max_attempts = max_attempts

        self._pending: dict[RecordKey, PendingWrite] = {}
        self._record_locks: dict[RecordKey, asyncio.Lock] = {}
        self._deliveries: set[asyncio.Task[int]] = set()
        self._flush_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, collection: str, record_id: str) -> bool:
        return (collection, record_id) in self._pending

    async def start(self) -> None:
        """Start periodic retries."""
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._periodic_flush())
        logger.info("Remote write outbox started", flush_interval=self.flush_interval)

    async def stop(self) -> None:
        """Stop periodic retries, finish in-flight sends and make one last attempt."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        await self.drain()
        await self.flush()
        if self._pending:
            logger.warning("Outbox stopped with unsent records", count=len(self._pending))

    async def _periodic_flush(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in periodic outbox flush")

    def submit(self, collection: str, record_id: str, data: dict[str, Any]) -> None:
        """Queue the newest snapshot of a record and start sending it.

        Replaces any unsent snapshot of the same record. Does not wait for the store.
        """
        key = (collection, record_id)
        if key not in self._pending and len(self._pending) >= self.max_pending:
            logger.error(
                "Outbox full, dropping remote write",
                collection=collection,
                record_id=record_id,
                max_pending=self.max_pending,
            )
            return

        self._pending[key] = PendingWrite(collection=collection, record_id=record_id, data=data)
        task = asyncio.create_task(self._deliver(key))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def drain(self) -> None:
        """Wait until every send started by submit() has finished or failed."""
        while True:
            running = [task for task in self._deliveries if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def flush(self) -> int:
        """Retry every queued record once.

        Returns:
            Number of snapshots that reached the store
        """
        sent = 0
        for key in list(self._pending):
            sent += await self._deliver(key)
        return sent

    async def _deliver(self, key: RecordKey) -> int:
        sent = 0
        lock = self._record_locks.setdefault(key, asyncio.Lock())
        async with lock:
            while True:
                write = self._pending.get(key)
                if write is None:
                    return sent
                try:
                    await self.store.set_record(
                        write.collection, write.record_id, write.data, merge=True
                    )
                except Exception as e:
                    self._record_failure(write, e)
                    return sent

                # A newer snapshot submitted while this one was in flight goes next
                if self._pending.get(key) is write:
                    del self._pending[key]
                sent += 1
                if write.attempts:
                    logger.info(
                        "Queued remote write delivered",
                        collection=write.collection,
                        record_id=write.record_id,
                        attempts=write.attempts + 1,
                    )

    def _record_failure(self, write: PendingWrite, error: Exception) -> None:
        key = (write.collection, write.record_id)
        if self._pending.get(key) is not write:
            return
        write.attempts += 1
        write.last_error = str(error)
        if write.attempts < self.max_attempts:
            logger.warning(
                "Remote write failed, queued for retry",
                collection=write.collection,
                record_id=write.record_id,
                attempts=write.attempts,
                error=str(error),
            )
            return

        del self._pending[key]
        logger.error(
            "Dropping remote write after retries",
            collection=write.collection,
            record_id=write.record_id,
            attempts=write.attempts,
            error=str(error),
        )
        capture_exception(
            error,
            tags={"component": "credits_outbox"},
            extra={"collection": write.collection, "record_id": write.record_id},
        )
