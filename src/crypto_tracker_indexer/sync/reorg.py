"""Chain reorganisation detection and rollback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from crypto_tracker_indexer.chain.base import ChainReader
from crypto_tracker_indexer.models import Chain
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.storage.repos import (
    ChainCursorRepository,
    PersistenceError,
    TransferRepository,
)
from crypto_tracker_indexer.telemetry import get_tracer

logger = logging.getLogger(__name__)

DEFAULT_ROLLBACK_DEPTH = 12

_tracer = get_tracer()


class ReorgError(Exception):
    """Raised when a detected reorganisation could not be rolled back."""

    def __init__(self, message: str, *, head: int, pivot: int) -> None:
        super().__init__(message)
        self.head = head
        self.pivot = pivot


@dataclass(frozen=True)
class ReorgResult:
    """Outcome of one reorg check."""

    detected: bool
    head: int
    pivot: int | None = None
    deleted: int = 0


@dataclass(frozen=True)
class PersistedHead:
    """Where persisted state ends for a chain and how to verify it."""

    block: int
    block_hash: str | None = None
    tx_hash: str | None = None
    from_cursor: bool = False


async def read_persisted_head(db: DatabaseManager, chain: Chain) -> PersistedHead:
    """Resolve the persisted head for ``chain``.

    The sync cursor is authoritative. Without one (rows written before the
    cursor existed) the head is the highest stored transfer block, verified
    through one of its transaction hashes.
    """
    async with db.get_async_session() as session:
        cursor = await ChainCursorRepository(session).get(chain)
        if cursor is not None:
            return PersistedHead(
                block=cursor.last_block,
                block_hash=cursor.last_block_hash,
                from_cursor=True,
            )
        transfers = TransferRepository(session)
        head = await transfers.get_max_block_number(chain)
        if head == 0:
            return PersistedHead(block=0)
        tx_hash = await transfers.get_representative_hash(chain, head)
        return PersistedHead(block=head, tx_hash=tx_hash)


class ReorgDetector:
    """Compares the persisted head with the canonical chain and rolls back on divergence.

    On mismatch every transfer above ``max(head - depth, 0)`` is deleted and
    the cursor moves to that pivot in the same transaction. The cursor hash is
    cleared, so the next check is skipped until a batch commits again.
    """

    def __init__(
        self,
        db: DatabaseManager,
        chain_reader: ChainReader,
        chain: Chain,
        *,
        depth: int = DEFAULT_ROLLBACK_DEPTH,
    ) -> None:
        if depth < 1:
            raise ValueError("depth must be >= 1")
        self._db = db
        self._reader = chain_reader
        self._chain = chain
        self._depth = depth

    @property
    def depth(self) -> int:
        return self._depth

    async def check(self) -> ReorgResult:
        """Run one reorg check, rolling back if the chain diverged.

        Raises:
            ChainClientError: If the chain cannot be queried.
            ReorgError: If a divergence was found but the rollback failed.
        """
        with _tracer.start_as_current_span("reorg-check") as span:
            span.set_attribute("chain", self._chain.value)
            head = await read_persisted_head(self._db, self._chain)
            span.set_attribute("db.head", head.block)

            if head.block == 0:
                return ReorgResult(detected=False, head=0)

            if not await self._diverged(head):
                span.set_attribute("reorg.detected", False)
                return ReorgResult(detected=False, head=head.block)

            span.set_attribute("reorg.detected", True)
            pivot = max(head.block - self._depth, 0)
            logger.warning(
                "Reorg detected on %s at block %d; rolling back to block %d",
                self._chain.value,
                head.block,
                pivot,
            )
            deleted = await self._rollback(head.block, pivot)
            span.set_attribute("reorg.pivot", pivot)
            span.set_attribute("reorg.deleted", deleted)

        logger.info("Rolled back %d transfers on %s above block %d", deleted, self._chain.value, pivot)
        return ReorgResult(detected=True, head=head.block, pivot=pivot, deleted=deleted)

    async def _diverged(self, head: PersistedHead) -> bool:
        if head.from_cursor:
            if head.block_hash is None:
                return False
            chain_hash = await self._reader.block_hash_by_height(head.block)
            return chain_hash.lower() != head.block_hash.lower()

        if head.tx_hash is None:
            return False
        block = await self._reader.block_by_height(head.block)
        return head.tx_hash.lower() not in {tx.hash.lower() for tx in block.transactions}

    async def _rollback(self, head: int, pivot: int) -> int:
        try:
            async with self._db.get_async_session() as session:
                deleted = await TransferRepository(session).delete_above(self._chain, pivot)
                await ChainCursorRepository(session).upsert(
                    self._chain, last_block=pivot, last_block_hash=None
                )
        except (PersistenceError, SQLAlchemyError) as e:
            raise ReorgError(
                f"Rollback of {self._chain.value} to block {pivot} failed: {e}",
                head=head,
                pivot=pivot,
            ) from e
        return deleted
