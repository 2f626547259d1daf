"""Tests for transfer extraction."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from crypto_tracker_indexer.chain.base import BlockNotFoundError, RPCError
from crypto_tracker_indexer.chain.memory import InMemoryChain, synthetic_block_hash
from crypto_tracker_indexer.chain.models import ChainTransaction
from crypto_tracker_indexer.models import Chain, TransferType
from crypto_tracker_indexer.storage.repos import WatchedTokenDTO, WatchedWalletDTO
from crypto_tracker_indexer.sync.extractor import (
    TRANSFER_EVENT_TOPIC,
    ChainInconsistencyError,
    PartialExtractionError,
    TransferExtractor,
)
from crypto_tracker_indexer.sync.watchset import WatchSet
from factories import (
    COUNTERPARTY,
    ONE_ETH,
    STRANGER,
    TOKEN_1,
    UNKNOWN_TOKEN,
    WALLET_1,
    WALLET_2,
    add_transfer_log,
    address_topic,
    amount_data,
    native_tx,
    tx_hash,
)

W1 = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
W2 = uuid.UUID("00000000-0000-0000-0000-0000000000a2")
T1 = uuid.UUID("00000000-0000-0000-0000-0000000000b1")
TS = 1_700_000_000


@pytest.fixture
def watch_set() -> WatchSet:
    return WatchSet.build(
        Chain.ETHEREUM,
        [
            WatchedWalletDTO(id=W1, address=WALLET_1.lower(), chain=Chain.ETHEREUM, is_active=True),
            WatchedWalletDTO(id=W2, address=WALLET_2.lower(), chain=Chain.ETHEREUM, is_active=True),
        ],
        [
            WatchedTokenDTO(
                id=T1, symbol="TK1", chain=Chain.ETHEREUM, contract_address=TOKEN_1.lower(), decimals=18
            )
        ],
    )


@pytest.fixture
def extractor(memory_chain: InMemoryChain) -> TransferExtractor:
    return TransferExtractor(memory_chain, Chain.ETHEREUM, concurrency=2)


class TestNativeTransfers:
    @pytest.mark.asyncio
    async def test_single_outgoing_transfer(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(
            100, timestamp=TS, transactions=[native_tx(1, sender=WALLET_1, to=COUNTERPARTY, value=ONE_ETH)]
        )

        result = await extractor.extract(100, 100, watch_set)

        assert len(result.records) == 1
        record = result.records[0]
        assert record.type == TransferType.TRANSFER
        assert record.wallet_id == W1
        assert record.amount == "1000000000000000000"
        assert record.token_id is None
        assert record.log_index is None
        assert record.block_number == 100
        assert record.hash == tx_hash(1)
        assert record.from_address == WALLET_1
        assert record.to_address == COUNTERPARTY
        assert record.time == datetime.fromtimestamp(TS, tz=UTC)

    @pytest.mark.asyncio
    async def test_incoming_transfer_matches_recipient(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS, transactions=[native_tx(1, sender=STRANGER, to=WALLET_2, value=5)])

        result = await extractor.extract(1, 1, watch_set)

        assert [r.wallet_id for r in result.records] == [W2]

    @pytest.mark.asyncio
    async def test_sender_wins_over_recipient(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(
            1,
            timestamp=TS,
            transactions=[
                native_tx(1, sender=WALLET_1, to=WALLET_2, value=5, index=0),
                native_tx(2, sender=WALLET_1, to=WALLET_1, value=6, index=1),
            ],
        )

        result = await extractor.extract(1, 1, watch_set)

        assert [r.wallet_id for r in result.records] == [W1, W1]

    @pytest.mark.asyncio
    async def test_unmatched_and_unrecoverable_are_skipped(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(
            1,
            timestamp=TS,
            transactions=[
                native_tx(1, sender=STRANGER, to=COUNTERPARTY, value=5, index=0),
                native_tx(2, sender=None, to=WALLET_1, value=5, index=1),
            ],
        )

        result = await extractor.extract(1, 1, watch_set)

        assert result.records == ()

    @pytest.mark.asyncio
    async def test_unsigned_deposit_to_watched_wallet_is_skipped(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        deposit = ChainTransaction.from_rpc(
            {
                "hash": tx_hash(7),
                "transactionIndex": "0x0",
                "type": "0x7e",
                "from": STRANGER,
                "to": WALLET_1,
                "value": hex(ONE_ETH),
            }
        )
        memory_chain.add_block(1, timestamp=TS, transactions=[deposit])

        result = await extractor.extract(1, 1, watch_set)

        assert deposit.sender is None
        assert result.records == ()

    @pytest.mark.asyncio
    async def test_contract_creation_has_empty_recipient(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS, transactions=[native_tx(1, sender=WALLET_1, to=None, value=0)])

        result = await extractor.extract(1, 1, watch_set)

        assert result.records[0].to_address == ""
        assert result.records[0].amount == "0"

    @pytest.mark.asyncio
    async def test_value_beyond_64_bits(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        value = 2**128 + 1
        memory_chain.add_block(1, timestamp=TS, transactions=[native_tx(1, sender=WALLET_1, to=STRANGER, value=value)])

        result = await extractor.extract(1, 1, watch_set)

        assert result.records[0].amount == str(value)


class TestTokenTransfers:
    @pytest.mark.asyncio
    async def test_known_and_unknown_tokens(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(101, timestamp=TS + 12)
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=STRANGER, recipient=WALLET_1,
            amount=12345, block_number=101, tx=10, log_index=0,
        )
        add_transfer_log(
            memory_chain, contract=UNKNOWN_TOKEN, sender=STRANGER, recipient=WALLET_1,
            amount=999, block_number=101, tx=11, log_index=1,
        )

        result = await extractor.extract(101, 101, watch_set)

        assert len(result.records) == 1
        record = result.records[0]
        assert record.type == TransferType.ERC20_TRANSFER
        assert record.token_id == T1
        assert record.wallet_id == W1
        assert record.amount == "12345"
        assert record.log_index == 0
        assert record.from_address == STRANGER
        assert record.to_address == WALLET_1
        assert record.time == datetime.fromtimestamp(TS + 12, tz=UTC)

    @pytest.mark.asyncio
    async def test_amount_beyond_64_bits(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        amount = 2**200 + 3
        memory_chain.add_block(1, timestamp=TS)
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=WALLET_1, recipient=STRANGER,
            amount=amount, block_number=1, tx=1, log_index=0,
        )

        result = await extractor.extract(1, 1, watch_set)

        assert result.records[0].amount == str(amount)

    @pytest.mark.asyncio
    async def test_unwatched_parties_are_skipped(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS)
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=STRANGER, recipient=COUNTERPARTY,
            amount=1, block_number=1, tx=1, log_index=0,
        )

        result = await extractor.extract(1, 1, watch_set)

        assert result.records == ()

    @pytest.mark.asyncio
    async def test_wrong_topic_count_is_skipped(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS)
        # ERC-721 style: tokenId indexed as a fourth topic
        memory_chain.add_log(
            address=TOKEN_1,
            topics=[TRANSFER_EVENT_TOPIC, address_topic(STRANGER), address_topic(WALLET_1), "0x" + "00" * 31 + "07"],
            data="0x",
            block_number=1,
            transaction_hash=tx_hash(1),
            log_index=0,
        )
        memory_chain.add_log(
            address=TOKEN_1,
            topics=[TRANSFER_EVENT_TOPIC, address_topic(WALLET_1)],
            data=amount_data(5),
            block_number=1,
            transaction_hash=tx_hash(2),
            log_index=1,
        )

        result = await extractor.extract(1, 1, watch_set)

        assert result.records == ()

    @pytest.mark.asyncio
    async def test_log_from_replaced_block_is_inconsistent(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(5, timestamp=TS)
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=STRANGER, recipient=WALLET_1,
            amount=1, block_number=5, tx=1, log_index=0,
        )
        # header moves to a sibling block while the stale log is still served
        memory_chain.add_block(5, timestamp=TS, block_hash=synthetic_block_hash(5, "fork"))

        with pytest.raises(ChainInconsistencyError):
            await extractor.extract(5, 5, watch_set)


class TestRangeBehaviour:
    @pytest.mark.asyncio
    async def test_natives_then_logs_in_order(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS, transactions=[native_tx(1, sender=WALLET_1, to=STRANGER, value=1)])
        memory_chain.add_block(
            2,
            timestamp=TS + 12,
            transactions=[
                native_tx(2, sender=STRANGER, to=WALLET_2, value=2, index=0),
                native_tx(3, sender=WALLET_2, to=STRANGER, value=3, index=1),
            ],
        )
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=STRANGER, recipient=WALLET_1,
            amount=20, block_number=2, tx=4, log_index=0,
        )
        add_transfer_log(
            memory_chain, contract=TOKEN_1, sender=WALLET_2, recipient=STRANGER,
            amount=10, block_number=1, tx=5, log_index=3,
        )

        result = await extractor.extract(1, 2, watch_set)

        assert [(r.type, r.block_number, r.amount) for r in result.records] == [
            (TransferType.TRANSFER, 1, "1"),
            (TransferType.TRANSFER, 2, "2"),
            (TransferType.TRANSFER, 2, "3"),
            (TransferType.ERC20_TRANSFER, 1, "10"),
            (TransferType.ERC20_TRANSFER, 2, "20"),
        ]
        assert result.native_count == 3
        assert result.token_count == 2

    @pytest.mark.asyncio
    async def test_every_block_fetched_once_and_times_match_headers(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_empty_blocks(1, 10)
        for height in (3, 7):
            memory_chain.add_block(
                height,
                timestamp=TS + height * 12,
                transactions=[native_tx(height, sender=WALLET_1, to=STRANGER, value=height)],
            )

        result = await extractor.extract(1, 10, watch_set)

        assert sorted(memory_chain.block_requests) == list(range(1, 11))
        assert memory_chain.log_requests == [(1, 10)]
        assert list(result.block_hashes) == list(range(1, 11))
        assert result.end_hash == synthetic_block_hash(10)
        for record in result.records:
            header = memory_chain.blocks[record.block_number]
            assert record.time == datetime.fromtimestamp(header.timestamp, tz=UTC)

    @pytest.mark.asyncio
    async def test_block_fetch_failure_propagates(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_empty_blocks(1, 3)

        with pytest.raises(BlockNotFoundError):
            await extractor.extract(1, 5, watch_set)

    @pytest.mark.asyncio
    async def test_log_failure_carries_native_records(
        self, memory_chain: InMemoryChain, extractor: TransferExtractor, watch_set: WatchSet
    ) -> None:
        memory_chain.add_block(1, timestamp=TS, transactions=[native_tx(1, sender=WALLET_1, to=STRANGER, value=9)])
        memory_chain.get_logs = AsyncMock(side_effect=RPCError("getLogs timed out"))  # type: ignore[method-assign]

        with pytest.raises(PartialExtractionError) as exc_info:
            await extractor.extract(1, 1, watch_set)

        assert [r.amount for r in exc_info.value.records] == ["9"]
        assert isinstance(exc_info.value.__cause__, RPCError)

    @pytest.mark.asyncio
    async def test_empty_range_rejected(self, extractor: TransferExtractor, watch_set: WatchSet) -> None:
        with pytest.raises(ValueError):
            await extractor.extract(5, 4, watch_set)

    def test_concurrency_must_be_positive(self, memory_chain: InMemoryChain) -> None:
        with pytest.raises(ValueError):
            TransferExtractor(memory_chain, Chain.ETHEREUM, concurrency=0)
