"""Initial schema: wallets, tokens, transfers, chain cursors.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain", "address", name="uq_wallets_chain_address"),
    )
    op.create_index("idx_wallets_chain_active", "wallets", ["chain", "is_active"])

    op.create_table(
        "tokens",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=True),
        sa.Column("decimals", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_tokens_chain_contract",
        "tokens",
        ["chain", sa.text("lower(contract_address)")],
        unique=True,
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wallet_id", sa.Uuid(), nullable=False),
        sa.Column("hash", sa.String(66), nullable=False),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("token_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("event_key", sa.String(16), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chain",
            "hash",
            "event_key",
            "wallet_id",
            name="uq_transfers_event_wallet",
        ),
    )
    op.create_index("idx_transfers_chain_block", "transfers", ["chain", "block_number"])
    op.create_index("idx_transfers_wallet_time", "transfers", ["wallet_id", "time"])

    op.create_table(
        "chain_cursors",
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        sa.Column("last_block_hash", sa.String(66), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("chain"),
    )


def downgrade() -> None:
    op.drop_table("chain_cursors")
    op.drop_index("idx_transfers_wallet_time", table_name="transfers")
    op.drop_index("idx_transfers_chain_block", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("uq_tokens_chain_contract", table_name="tokens")
    op.drop_table("tokens")
    op.drop_index("idx_wallets_chain_active", table_name="wallets")
    op.drop_table("wallets")
