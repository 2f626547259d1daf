"""SQLAlchemy models for persistent storage.

This module defines the database schema for watched wallets, watched tokens,
indexed transfers and the per-chain sync cursor.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from crypto_tracker_indexer.storage.types import UInt256Amount


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WalletModel(Base):
    """Watched wallet. Managed by the platform API; the indexer only reads it."""

    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("chain", "address", name="uq_wallets_chain_address"),
        Index("idx_wallets_chain_active", "chain", "is_active"),
    )


class TokenModel(Base):
    """Known token. A null contract address denotes the chain's native asset."""

    __tablename__ = "tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


# Contract addresses arrive in mixed checksum case.
Index(
    "uq_tokens_chain_contract",
    TokenModel.chain,
    func.lower(TokenModel.contract_address),
    unique=True,
)


class TransferModel(Base):
    """A confirmed transfer attributed to one watched wallet.

    ``event_key`` is the log index for token transfers and ``"native"`` for
    value transfers, so the uniqueness key never contains NULLs.
    """

    __tablename__ = "transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    wallet_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    hash: Mapped[str] = mapped_column(String(66), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[str] = mapped_column(UInt256Amount(), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_key: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "chain",
            "hash",
            "event_key",
            "wallet_id",
            name="uq_transfers_event_wallet",
        ),
        Index("idx_transfers_chain_block", "chain", "block_number"),
        Index("idx_transfers_wallet_time", "wallet_id", "time"),
    )


class ChainCursorModel(Base):
    """Last block fully processed for a chain, with its hash for reorg checks."""

    __tablename__ = "chain_cursors"

    chain: Mapped[str] = mapped_column(String(16), primary_key=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
