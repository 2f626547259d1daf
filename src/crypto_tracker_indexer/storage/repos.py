"""Repository pattern implementations for data access.

This module provides the data access the sync engine needs: watch-set reads,
bulk transfer inserts, range deletes for reorg rollback, and the per-chain
sync cursor.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from crypto_tracker_indexer.models import (
    NATIVE_EVENT_KEY,
    Chain,
    TransferRecord,
    TransferStatus,
    TransferType,
)
from crypto_tracker_indexer.storage.models import (
    ChainCursorModel,
    TokenModel,
    TransferModel,
    WalletModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Keeps a single INSERT well under the 32767 bind-parameter ceiling of both
# asyncpg and SQLite.
INSERT_CHUNK_SIZE = 1000

TRANSFER_CONFLICT_COLUMNS = ["chain", "hash", "event_key", "wallet_id"]


class PersistenceError(Exception):
    """Raised when a write to the transfer store fails."""


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class WatchedWalletDTO:
    """Data transfer object for watched wallets."""

    id: uuid.UUID
    address: str
    chain: Chain
    is_active: bool
    label: str | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletModel) -> WatchedWalletDTO:
        return cls(
            id=model.id,
            address=model.address.lower(),
            chain=Chain(model.chain),
            is_active=model.is_active,
            label=model.label,
            last_synced_at=_as_utc(model.last_synced_at) if model.last_synced_at else None,
        )


@dataclass
class WatchedTokenDTO:
    """Data transfer object for known tokens."""

    id: uuid.UUID
    symbol: str
    chain: Chain
    contract_address: str | None
    decimals: int

    @classmethod
    def from_model(cls, model: TokenModel) -> WatchedTokenDTO:
        return cls(
            id=model.id,
            symbol=model.symbol,
            chain=Chain(model.chain),
            contract_address=model.contract_address.lower() if model.contract_address else None,
            decimals=model.decimals,
        )


@dataclass
class ChainCursorDTO:
    """Data transfer object for the per-chain sync cursor."""

    chain: Chain
    last_block: int
    last_block_hash: str | None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ChainCursorModel) -> ChainCursorDTO:
        return cls(
            chain=Chain(model.chain),
            last_block=model.last_block,
            last_block_hash=model.last_block_hash,
            updated_at=_as_utc(model.updated_at) if model.updated_at else None,
        )


def transfer_from_model(model: TransferModel) -> TransferRecord:
    """Rebuild a domain transfer record from a stored row."""
    return TransferRecord(
        id=model.id,
        time=_as_utc(model.time),
        wallet_id=model.wallet_id,
        hash=model.hash,
        chain=Chain(model.chain),
        from_address=model.from_address,
        to_address=model.to_address,
        token_id=model.token_id,
        amount=model.amount,
        block_number=model.block_number,
        status=TransferStatus(model.status),
        type=TransferType(model.type),
        log_index=None if model.event_key == NATIVE_EVENT_KEY else int(model.event_key),
    )


def _transfer_row(record: TransferRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "time": record.time,
        "wallet_id": record.wallet_id,
        "hash": record.hash.lower(),
        "chain": record.chain.value,
        "from_address": record.from_address,
        "to_address": record.to_address,
        "token_id": record.token_id,
        "amount": record.amount,
        "block_number": record.block_number,
        "status": record.status.value,
        "type": record.type.value,
        "event_key": record.event_key,
    }


class WalletRepository:
    """Read access to watched wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active(self, chain: Chain) -> list[WatchedWalletDTO]:
        """Active wallets on ``chain``."""
        result = await self.session.execute(
            select(WalletModel)
            .where(WalletModel.is_active.is_(True), WalletModel.chain == chain.value)
            .order_by(WalletModel.address.asc())
        )
        return [WatchedWalletDTO.from_model(m) for m in result.scalars().all()]


class TokenRepository:
    """Read access to known token contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_contracts(self, chain: Chain) -> list[WatchedTokenDTO]:
        """Tokens on ``chain`` that have a contract address (native asset excluded)."""
        result = await self.session.execute(
            select(TokenModel)
            .where(TokenModel.chain == chain.value, TokenModel.contract_address.is_not(None))
            .order_by(TokenModel.contract_address.asc())
        )
        return [WatchedTokenDTO.from_model(m) for m in result.scalars().all()]


class TransferRepository:
    """Repository for indexed transfers."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get_max_block_number(self, chain: Chain) -> int:
        """Highest block with a persisted transfer on ``chain``, 0 if none."""
        result = await self.session.execute(
            select(func.coalesce(func.max(TransferModel.block_number), 0)).where(
                TransferModel.chain == chain.value
            )
        )
        return int(result.scalar_one())

    async def get_representative_hash(self, chain: Chain, block_number: int) -> str | None:
        """Transaction hash of any one persisted transfer at ``block_number``."""
        result = await self.session.execute(
            select(TransferModel.hash)
            .where(TransferModel.block_number == block_number, TransferModel.chain == chain.value)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_chain(self, chain: Chain, *, limit: int = 10_000) -> list[TransferRecord]:
        """Persisted transfers for ``chain`` in block order."""
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.chain == chain.value)
            .order_by(TransferModel.block_number.asc(), TransferModel.hash.asc(), TransferModel.event_key.asc())
            .limit(limit)
        )
        return [transfer_from_model(m) for m in result.scalars().all()]

    async def count(self, chain: Chain) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TransferModel).where(TransferModel.chain == chain.value)
        )
        return int(result.scalar_one())

    async def insert_many(self, records: Sequence[TransferRecord]) -> int:
        """Bulk insert transfers (idempotent).

        Rows whose idempotence key already exists are skipped. The caller owns
        the transaction, so a failure leaves nothing behind once it rolls back.

        Returns the number of attempted inserts (not the number of newly created
        rows), for portability across dialects.

        Raises:
            PersistenceError: If the database rejects the batch.
        """
        if not records:
            return 0

        dialect = self.session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        rows = [_transfer_row(r) for r in records]
        try:
            for offset in range(0, len(rows), INSERT_CHUNK_SIZE):
                chunk = rows[offset : offset + INSERT_CHUNK_SIZE]
                stmt = insert_fn(TransferModel).values(chunk)
                stmt = stmt.on_conflict_do_nothing(index_elements=TRANSFER_CONFLICT_COLUMNS)
                await self.session.execute(stmt)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Bulk insert of {len(rows)} transfers failed: {e}") from e
        return len(rows)

    async def delete_above(self, chain: Chain, block_number: int) -> int:
        """Delete every transfer on ``chain`` with a block number above ``block_number``.

        Returns:
            Number of rows removed.

        Raises:
            PersistenceError: If the delete fails.
        """
        try:
            result = await self.session.execute(
                delete(TransferModel).where(
                    TransferModel.chain == chain.value,
                    TransferModel.block_number > block_number,
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Rollback delete above block {block_number} failed: {e}") from e
        # SQLAlchemy Result does have rowcount but typing doesn't reflect it
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class ChainCursorRepository:
    """Repository for the per-chain sync cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain: Chain) -> ChainCursorDTO | None:
        model = await self.session.get(ChainCursorModel, chain.value)
        return ChainCursorDTO.from_model(model) if model else None

    async def upsert(self, chain: Chain, *, last_block: int, last_block_hash: str | None) -> ChainCursorDTO:
        """Move the cursor for ``chain``, creating it on first use."""
        now = datetime.now(UTC)
        values = {
            "chain": chain.value,
            "last_block": last_block,
            "last_block_hash": last_block_hash.lower() if last_block_hash else None,
            "updated_at": now,
        }
        dialect = self.session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(ChainCursorModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain"],
            set_={
                "last_block": stmt.excluded.last_block,
                "last_block_hash": stmt.excluded.last_block_hash,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            await self.session.execute(stmt)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cursor update for {chain.value} failed: {e}") from e
        return ChainCursorDTO(
            chain=chain,
            last_block=last_block,
            last_block_hash=values["last_block_hash"],
            updated_at=now,
        )
