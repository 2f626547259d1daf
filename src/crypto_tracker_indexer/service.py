"""Indexer service orchestrator.

This module provides the IndexerService class that owns the shared resources
(database engine, event-bus connection, chain clients) and runs one sync worker per
configured chain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import nats
from redis.asyncio import Redis

from crypto_tracker_indexer.chain.base import ChainReader
from crypto_tracker_indexer.chain.client import EvmChainClient
from crypto_tracker_indexer.config import Settings, get_settings
from crypto_tracker_indexer.events.publisher import BusClient, EventPublisher
from crypto_tracker_indexer.models import Chain
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.sync.worker import CycleResult, SyncWorker, WorkerStats

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    chains: list[Chain] = field(default_factory=list)
    last_error: str | None = None


class IndexerService:
    """Runs the sync engine for every chain with an RPC endpoint.

    Resources passed in by the caller are used as-is and left open on stop;
    anything the service creates itself is closed on stop.

    Example:
        ```python
        from crypto_tracker_indexer.config import get_settings
        from crypto_tracker_indexer.service import IndexerService

        async with IndexerService(get_settings()) as service:
            ...
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        chain_readers: Mapping[Chain, ChainReader] | None = None,
        db_manager: DatabaseManager | None = None,
        bus: BusClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            chain_readers: Pre-built chain readers keyed by chain. When given,
                only these chains are synced.
            db_manager: Shared database manager to use instead of creating one.
            bus: Event-bus client to use instead of connecting to
                NATS (or Redis when ``EVENT_BUS=redis``).
        """
        self._settings = settings or get_settings()
        self._injected_readers = dict(chain_readers) if chain_readers is not None else None
        self._owns_db = db_manager is None
        self._owns_bus = bus is None

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._db_manager = db_manager
        self._bus: Any = bus
        self._readers: dict[Chain, ChainReader] = {}
        self._owned_readers: list[ChainReader] = []
        self._workers: dict[Chain, SyncWorker] = {}
        self._publisher: EventPublisher | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def workers(self) -> Mapping[Chain, SyncWorker]:
        return dict(self._workers)

    def worker_stats(self) -> dict[Chain, WorkerStats]:
        return {chain: worker.stats for chain, worker in self._workers.items()}

    async def start(self) -> None:
        """Start one sync worker per chain.

        Raises:
            RuntimeError: If the service is already running or no chain is configured.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer service...")

        try:
            await self._initialize_components()
            for worker in self._workers.values():
                await worker.start()
            self._stats.started_at = datetime.now(UTC)
            self._stats.chains = list(self._workers)
            self._state = ServiceState.RUNNING
            logger.info(
                "Indexer service started for %s",
                ", ".join(chain.value for chain in self._workers),
            )
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer service: %s", e)
            await self._stop_workers()
            await self._cleanup()
            self._state = ServiceState.STOPPED
            raise

    async def stop(self) -> None:
        """Stop all workers and release resources."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping indexer service...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_workers()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("Indexer service stopped")

    async def run_once(self) -> dict[Chain, CycleResult | None]:
        """Run a single guarded cycle for every chain without starting the loops."""
        initialized_here = not self._workers
        if initialized_here:
            await self._initialize_components()
        try:
            results: dict[Chain, CycleResult | None] = {}
            for chain, worker in self._workers.items():
                results[chain] = await worker.run_guarded_cycle()
            return results
        finally:
            if initialized_here:
                await self._cleanup()

    async def _initialize_components(self) -> None:
        settings = self._settings

        if self._bus is None:
            self._bus = await self._connect_bus()

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(
                settings.database.url,
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
            )

        self._publisher = EventPublisher(self._bus)

        if self._injected_readers is not None:
            self._readers = dict(self._injected_readers)
        else:
            for chain in settings.configured_chains():
                logger.debug("Initializing %s chain client...", chain.value)
                client = EvmChainClient.from_settings(chain, settings.rpc)
                self._readers[chain] = client
                self._owned_readers.append(client)

        if not self._readers:
            raise RuntimeError("No chains configured")

        sync = settings.sync
        for chain, reader in self._readers.items():
            self._workers[chain] = SyncWorker(
                chain,
                reader,
                self._db_manager,
                self._publisher,
                batch_size=sync.block_batch_size,
                concurrency=sync.worker_count,
                interval_seconds=sync.interval_seconds,
                cycle_timeout_seconds=sync.cycle_timeout_seconds,
                rollback_depth=sync.reorg_rollback_depth,
            )

    async def _connect_bus(self) -> Any:
        settings = self._settings
        if settings.event_bus == "redis":
            logger.debug("Initializing Redis connection...")
            return Redis.from_url(settings.redis.url)
        logger.debug("Connecting to NATS at %s...", settings._redact_url(settings.nats.url))
        return await nats.connect(settings.nats.url, name=settings.service_name)

    async def _stop_workers(self) -> None:
        for worker in self._workers.values():
            await worker.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        for reader in self._owned_readers:
            await reader.aclose()
        self._owned_readers = []
        self._readers = {}
        self._workers = {}

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._bus is not None and self._owns_bus:
            if self._settings.event_bus == "redis":
                await self._bus.aclose()
            else:
                await self._bus.drain()
            self._bus = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and run until stop() is called or the task is cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> IndexerService:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
