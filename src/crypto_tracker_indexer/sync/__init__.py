"""Sync engine - watch set, extraction, reorg handling and the per-chain loop."""

from crypto_tracker_indexer.sync.extractor import (
    TRANSFER_EVENT_TOPIC,
    ChainInconsistencyError,
    ExtractionError,
    ExtractionResult,
    PartialExtractionError,
    TransferExtractor,
)
from crypto_tracker_indexer.sync.reorg import (
    PersistedHead,
    ReorgDetector,
    ReorgError,
    ReorgResult,
    read_persisted_head,
)
from crypto_tracker_indexer.sync.watchset import WatchSet, load_watch_set
from crypto_tracker_indexer.sync.worker import (
    CycleOutcome,
    CycleResult,
    SyncWorker,
    WorkerState,
    WorkerStats,
)

__all__ = [
    "TRANSFER_EVENT_TOPIC",
    "ChainInconsistencyError",
    "CycleOutcome",
    "CycleResult",
    "ExtractionError",
    "ExtractionResult",
    "PartialExtractionError",
    "PersistedHead",
    "ReorgDetector",
    "ReorgError",
    "ReorgResult",
    "SyncWorker",
    "TransferExtractor",
    "WatchSet",
    "WorkerState",
    "WorkerStats",
    "load_watch_set",
    "read_persisted_head",
]
