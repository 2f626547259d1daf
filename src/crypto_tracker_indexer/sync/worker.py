"""Per-chain sync loop.

Each cycle runs, in order: reorg check, watch-set load, range computation,
extraction, persistence and publication. A failure at any step aborts the
cycle before the persisted head moves; the next tick starts over from
whatever state was last committed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from crypto_tracker_indexer.chain.base import ChainReader
from crypto_tracker_indexer.events.publisher import EventPublisher
from crypto_tracker_indexer.models import Chain
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.storage.repos import ChainCursorRepository, TransferRepository
from crypto_tracker_indexer.sync.extractor import DEFAULT_CONCURRENCY, TransferExtractor
from crypto_tracker_indexer.sync.reorg import (
    DEFAULT_ROLLBACK_DEPTH,
    ReorgDetector,
    ReorgError,
    ReorgResult,
    read_persisted_head,
)
from crypto_tracker_indexer.sync.watchset import load_watch_set
from crypto_tracker_indexer.telemetry import get_meter, get_tracer

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_INTERVAL_SECONDS = 15.0
DEFAULT_CYCLE_TIMEOUT_SECONDS = 120.0

_tracer = get_tracer()
_transfers_persisted = get_meter().create_counter(
    "indexer.transfers.persisted",
    unit="1",
    description="Transfer rows submitted to the store in committed batches",
)


class WorkerState(str, Enum):
    """Sync worker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    IDLE = "idle"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Statistics for one chain's sync loop."""

    started_at: datetime | None = None
    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    reorgs_detected: int = 0
    blocks_processed: int = 0
    transfers_persisted: int = 0
    events_published: int = 0
    persisted_head: int = 0
    last_cycle_time: datetime | None = None
    last_cycle_duration_seconds: float = 0.0
    last_error: str | None = None


class CycleOutcome(str, Enum):
    """How a completed cycle ended."""

    SYNCED = "synced"
    UP_TO_DATE = "up_to_date"
    NO_WALLETS = "no_wallets"


@dataclass(frozen=True)
class CycleResult:
    """Summary of one completed sync cycle."""

    outcome: CycleOutcome
    reorg: ReorgResult
    chain_head: int | None = None
    db_head: int | None = None
    start: int | None = None
    end: int | None = None
    wallet_count: int = 0
    token_count: int = 0
    transfers_found: int = 0
    transfers_published: int = 0

    @property
    def blocks_processed(self) -> int:
        if self.start is None or self.end is None:
            return 0
        return self.end - self.start + 1


class SyncWorker:
    """Drives the sync cycle for one chain on a fixed interval.

    Example:
        ```python
        worker = SyncWorker(Chain.ETHEREUM, client, db, publisher)
        await worker.start()
        ...
        await worker.stop()
        ```
    """

    def __init__(
        self,
        chain: Chain,
        chain_reader: ChainReader,
        db: DatabaseManager,
        publisher: EventPublisher,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        cycle_timeout_seconds: float = DEFAULT_CYCLE_TIMEOUT_SECONDS,
        rollback_depth: int = DEFAULT_ROLLBACK_DEPTH,
    ) -> None:
        """Initialize the worker.

        Args:
            chain: Chain this worker tails.
            chain_reader: RPC access for the chain.
            db: Shared database manager.
            publisher: Event publisher used after each committed batch.
            batch_size: Maximum blocks per cycle.
            concurrency: Maximum simultaneous block fetches.
            interval_seconds: Delay between cycles.
            cycle_timeout_seconds: Deadline for a single cycle.
            rollback_depth: Blocks removed below the head on reorg.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._chain = chain
        self._reader = chain_reader
        self._db = db
        self._publisher = publisher
        self._batch_size = batch_size
        self._interval = interval_seconds
        self._cycle_timeout = cycle_timeout_seconds

        self._extractor = TransferExtractor(chain_reader, chain, concurrency=concurrency)
        self._reorg = ReorgDetector(db, chain_reader, chain, depth=rollback_depth)

        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def chain(self) -> Chain:
        return self._chain

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStats:
        """Current worker statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop. The first cycle runs immediately."""
        if self._state != WorkerState.STOPPED:
            logger.warning("Cannot start %s worker: already in state %s", self._chain.value, self._state)
            return

        self._state = WorkerState.STARTING
        self._stop_event.clear()
        self._stats.started_at = datetime.now(UTC)
        self._task = asyncio.create_task(self._sync_loop(), name=f"sync-{self._chain.value.lower()}")
        self._state = WorkerState.IDLE
        logger.info("%s sync worker started", self._chain.value)

    async def stop(self) -> None:
        """Stop the loop, cancelling any in-flight cycle."""
        if self._state == WorkerState.STOPPED:
            return

        self._state = WorkerState.STOPPING
        self._stop_event.set()

        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        self._state = WorkerState.STOPPED
        logger.info("%s sync worker stopped", self._chain.value)

    async def _sync_loop(self) -> None:
        """Background loop that runs one cycle per interval."""
        while not self._stop_event.is_set():
            await self.run_guarded_cycle()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

    async def run_guarded_cycle(self) -> CycleResult | None:
        """Run one cycle under the cycle deadline; never raises on recoverable errors."""
        started = datetime.now(UTC)
        self._state = WorkerState.SYNCING
        self._stats.total_cycles += 1
        try:
            result = await asyncio.wait_for(self.run_cycle(), timeout=self._cycle_timeout)
        except TimeoutError:
            self._record_failure(f"cycle exceeded {self._cycle_timeout:.0f}s deadline")
            return None
        except ReorgError as e:
            self._stats.reorgs_detected += 1
            self._record_failure(str(e))
            return None
        except Exception as e:
            self._record_failure(str(e))
            return None

        finished = datetime.now(UTC)
        self._stats.successful_cycles += 1
        self._stats.last_cycle_time = finished
        self._stats.last_cycle_duration_seconds = (finished - started).total_seconds()
        self._stats.last_error = None
        self._state = WorkerState.IDLE
        return result

    def _record_failure(self, message: str) -> None:
        self._stats.failed_cycles += 1
        self._stats.last_error = message
        self._state = WorkerState.ERROR
        logger.error("%s sync cycle failed: %s", self._chain.value, message)

    async def run_cycle(self) -> CycleResult:
        """Run a single sync cycle.

        Raises:
            ChainClientError: If the chain cannot be read.
            ExtractionError: If extraction fails or sees an inconsistent chain.
            ReorgError: If a reorg was detected but could not be rolled back.
            PersistenceError: If the batch could not be written.
        """
        with _tracer.start_as_current_span("sync-cycle") as span:
            span.set_attribute("chain", self._chain.value)

            reorg = await self._reorg.check()
            span.set_attribute("reorg.detected", reorg.detected)
            if reorg.detected:
                self._stats.reorgs_detected += 1

            async with self._db.get_async_session() as session:
                watch_set = await load_watch_set(session, self._chain)
            span.set_attribute("wallet_count", watch_set.wallet_count)
            span.set_attribute("token_count", watch_set.token_count)
            if watch_set.is_empty:
                logger.debug("%s: no active wallets, skipping cycle", self._chain.value)
                return CycleResult(outcome=CycleOutcome.NO_WALLETS, reorg=reorg)

            chain_head = await self._reader.latest_height()
            db_head = (await read_persisted_head(self._db, self._chain)).block
            self._stats.persisted_head = db_head
            span.set_attribute("chain.head", chain_head)
            span.set_attribute("db.head", db_head)

            start = db_head + 1
            if start > chain_head:
                span.set_attribute("blocks_processed", 0)
                return CycleResult(
                    outcome=CycleOutcome.UP_TO_DATE,
                    reorg=reorg,
                    chain_head=chain_head,
                    db_head=db_head,
                    wallet_count=watch_set.wallet_count,
                    token_count=watch_set.token_count,
                )
            end = min(start + self._batch_size - 1, chain_head)

            extraction = await self._extractor.extract(start, end, watch_set)
            span.set_attribute("blocks_processed", extraction.blocks_processed)
            span.set_attribute("transfers_found", len(extraction.records))

            async with self._db.get_async_session() as session:
                await TransferRepository(session).insert_many(extraction.records)
                await ChainCursorRepository(session).upsert(
                    self._chain, last_block=end, last_block_hash=extraction.end_hash
                )

            if extraction.records:
                _transfers_persisted.add(len(extraction.records), {"chain": self._chain.value})
            self._stats.blocks_processed += extraction.blocks_processed
            self._stats.transfers_persisted += len(extraction.records)
            self._stats.persisted_head = end

            published = await self._publisher.publish_transfers(extraction.records)
            self._stats.events_published += published
            span.set_attribute("transfers_published", published)

        logger.info(
            "%s synced blocks %d..%d (head %d): %d transfers, %d published",
            self._chain.value,
            start,
            end,
            chain_head,
            len(extraction.records),
            published,
        )
        return CycleResult(
            outcome=CycleOutcome.SYNCED,
            reorg=reorg,
            chain_head=chain_head,
            db_head=db_head,
            start=start,
            end=end,
            wallet_count=watch_set.wallet_count,
            token_count=watch_set.token_count,
            transfers_found=len(extraction.records),
            transfers_published=published,
        )
