"""Tests for storage repositories."""

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from crypto_tracker_indexer.models import Chain, TransferRecord, TransferType
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.storage.models import TransferModel
from crypto_tracker_indexer.storage import repos
from crypto_tracker_indexer.storage.repos import (
    ChainCursorRepository,
    TokenRepository,
    TransferRepository,
    WalletRepository,
)
from factories import COUNTERPARTY, TOKEN_1, WALLET_1, WALLET_2, seed_token, seed_wallet, tx_hash

BLOCK_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _record(
    *,
    wallet_id: uuid.UUID,
    block_number: int,
    n: int = 1,
    chain: Chain = Chain.ETHEREUM,
    amount: str = "1000",
    log_index: int | None = None,
    token_id: uuid.UUID | None = None,
) -> TransferRecord:
    return TransferRecord(
        time=BLOCK_TIME,
        wallet_id=wallet_id,
        hash=tx_hash(n),
        chain=chain,
        from_address=WALLET_1,
        to_address=COUNTERPARTY,
        amount=amount,
        block_number=block_number,
        type=TransferType.TRANSFER if log_index is None else TransferType.ERC20_TRANSFER,
        token_id=token_id,
        log_index=log_index,
    )


# ============================================================================
# Watch-set queries
# ============================================================================


class TestWalletRepository:
    @pytest.mark.asyncio
    async def test_list_active_filters_inactive_and_other_chains(self, db: DatabaseManager) -> None:
        active = await seed_wallet(db, WALLET_1)
        await seed_wallet(db, WALLET_2, is_active=False)
        await seed_wallet(db, COUNTERPARTY, chain=Chain.POLYGON)

        async with db.get_async_session() as session:
            wallets = await WalletRepository(session).list_active(Chain.ETHEREUM)

        assert [w.id for w in wallets] == [active]
        assert wallets[0].address == WALLET_1.lower()


class TestTokenRepository:
    @pytest.mark.asyncio
    async def test_list_contracts_excludes_native_asset(self, db: DatabaseManager) -> None:
        token_id = await seed_token(db, TOKEN_1, symbol="USDC")
        await seed_token(db, None, symbol="ETH")

        async with db.get_async_session() as session:
            tokens = await TokenRepository(session).list_contracts(Chain.ETHEREUM)

        assert [t.id for t in tokens] == [token_id]
        assert tokens[0].contract_address == TOKEN_1.lower()


# ============================================================================
# TransferRepository
# ============================================================================


class TestTransferRepository:
    @pytest.mark.asyncio
    async def test_max_block_is_zero_when_empty(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            assert await TransferRepository(session).get_max_block_number(Chain.ETHEREUM) == 0

    @pytest.mark.asyncio
    async def test_insert_and_read_back(self, db: DatabaseManager) -> None:
        wallet_id = uuid.uuid4()
        record = _record(wallet_id=wallet_id, block_number=100)

        async with db.get_async_session() as session:
            assert await TransferRepository(session).insert_many([record]) == 1

        async with db.get_async_session() as session:
            stored = await TransferRepository(session).list_by_chain(Chain.ETHEREUM)

        assert len(stored) == 1
        assert stored[0].id == record.id
        assert stored[0].time == BLOCK_TIME
        assert stored[0].wallet_id == wallet_id
        assert stored[0].log_index is None
        assert stored[0].type == TransferType.TRANSFER

    @pytest.mark.asyncio
    async def test_amount_beyond_64_bits_is_exact(self, db: DatabaseManager) -> None:
        amount = str(2**255 + 12345)
        record = _record(wallet_id=uuid.uuid4(), block_number=1, amount=amount)

        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many([record])

        async with db.get_async_session() as session:
            stored = await TransferRepository(session).list_by_chain(Chain.ETHEREUM)

        assert stored[0].amount == amount

    @pytest.mark.asyncio
    async def test_reinsert_is_noop(self, db: DatabaseManager) -> None:
        wallet_id = uuid.uuid4()
        first = _record(wallet_id=wallet_id, block_number=5)
        # same event, fresh row id
        again = _record(wallet_id=wallet_id, block_number=5)

        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many([first])
        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many([again])

        async with db.get_async_session() as session:
            assert await TransferRepository(session).count(Chain.ETHEREUM) == 1

    @pytest.mark.asyncio
    async def test_distinct_log_indexes_are_distinct_rows(self, db: DatabaseManager) -> None:
        wallet_id = uuid.uuid4()
        token_id = uuid.uuid4()
        records = [
            _record(wallet_id=wallet_id, block_number=5, log_index=0, token_id=token_id),
            _record(wallet_id=wallet_id, block_number=5, log_index=1, token_id=token_id),
            _record(wallet_id=wallet_id, block_number=5),
        ]

        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many(records)

        async with db.get_async_session() as session:
            assert await TransferRepository(session).count(Chain.ETHEREUM) == 3

    @pytest.mark.asyncio
    async def test_insert_is_chunked_within_one_transaction(
        self, db: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(repos, "INSERT_CHUNK_SIZE", 10)
        wallet_id = uuid.uuid4()
        records = [_record(wallet_id=wallet_id, block_number=1 + n // 10, n=n) for n in range(25)]

        async with db.get_async_session() as session:
            assert await TransferRepository(session).insert_many(records) == 25

        async with db.get_async_session() as session:
            assert await TransferRepository(session).count(Chain.ETHEREUM) == 25

    @pytest.mark.asyncio
    async def test_failed_transaction_leaves_nothing(self, db: DatabaseManager) -> None:
        records = [_record(wallet_id=uuid.uuid4(), block_number=9)]

        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await TransferRepository(session).insert_many(records)
                raise RuntimeError("abort before commit")

        async with db.get_async_session() as session:
            assert await TransferRepository(session).count(Chain.ETHEREUM) == 0

    @pytest.mark.asyncio
    async def test_representative_hash(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many(
                [_record(wallet_id=uuid.uuid4(), block_number=77, n=77)]
            )

        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            assert await repo.get_representative_hash(Chain.ETHEREUM, 77) == tx_hash(77)
            assert await repo.get_representative_hash(Chain.ETHEREUM, 78) is None
            assert await repo.get_representative_hash(Chain.POLYGON, 77) is None

    @pytest.mark.asyncio
    async def test_delete_above_is_scoped_to_chain(self, db: DatabaseManager) -> None:
        wallet_id = uuid.uuid4()
        records = [
            _record(wallet_id=wallet_id, block_number=b, n=b) for b in (100, 101, 102, 103)
        ] + [_record(wallet_id=wallet_id, block_number=103, n=999, chain=Chain.POLYGON)]

        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many(records)

        async with db.get_async_session() as session:
            deleted = await TransferRepository(session).delete_above(Chain.ETHEREUM, 101)

        assert deleted == 2
        async with db.get_async_session() as session:
            rows = (await session.execute(select(TransferModel.chain, TransferModel.block_number))).all()
        assert sorted(tuple(r) for r in rows) == [("ETHEREUM", 100), ("ETHEREUM", 101), ("POLYGON", 103)]


# ============================================================================
# ChainCursorRepository
# ============================================================================


class TestChainCursorRepository:
    @pytest.mark.asyncio
    async def test_get_missing(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            assert await ChainCursorRepository(session).get(Chain.ETHEREUM) is None

    @pytest.mark.asyncio
    async def test_upsert_creates_then_moves(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await ChainCursorRepository(session).upsert(
                Chain.ETHEREUM, last_block=100, last_block_hash="0xAB" + "00" * 31
            )
        async with db.get_async_session() as session:
            await ChainCursorRepository(session).upsert(Chain.ETHEREUM, last_block=88, last_block_hash=None)

        async with db.get_async_session() as session:
            cursor = await ChainCursorRepository(session).get(Chain.ETHEREUM)

        assert cursor is not None
        assert cursor.last_block == 88
        assert cursor.last_block_hash is None
        assert cursor.updated_at is not None and cursor.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_hash_is_lowercased(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            dto = await ChainCursorRepository(session).upsert(
                Chain.BASE, last_block=1, last_block_hash="0xABCDEF"
            )
        assert dto.last_block_hash == "0xabcdef"
