"""Tests for the per-cycle watch set."""

import uuid

import pytest

from crypto_tracker_indexer.models import Chain
from crypto_tracker_indexer.storage.database import DatabaseManager
from crypto_tracker_indexer.storage.repos import WatchedTokenDTO, WatchedWalletDTO
from crypto_tracker_indexer.sync.watchset import WatchSet, load_watch_set
from factories import TOKEN_1, WALLET_1, WALLET_2, seed_token, seed_wallet


def test_build_lowercases_keys() -> None:
    wallet_id = uuid.uuid4()
    token_id = uuid.uuid4()
    watch_set = WatchSet.build(
        Chain.ETHEREUM,
        [WatchedWalletDTO(id=wallet_id, address=WALLET_1, chain=Chain.ETHEREUM, is_active=True)],
        [
            WatchedTokenDTO(
                id=token_id, symbol="USDC", chain=Chain.ETHEREUM, contract_address=TOKEN_1, decimals=6
            )
        ],
    )

    assert set(watch_set.wallet_by_address) == {WALLET_1.lower()}
    assert watch_set.wallet_for(WALLET_1.upper().replace("0X", "0x")) == wallet_id
    assert watch_set.token_for(TOKEN_1) == token_id
    assert watch_set.wallet_count == 1
    assert watch_set.token_count == 1


def test_lookups_reject_missing_values() -> None:
    watch_set = WatchSet.build(Chain.ETHEREUM, [], [])

    assert watch_set.is_empty
    assert watch_set.wallet_for(None) is None
    assert watch_set.wallet_for("") is None
    assert watch_set.token_for(TOKEN_1) is None


def test_maps_are_read_only() -> None:
    watch_set = WatchSet.build(Chain.ETHEREUM, [], [])

    with pytest.raises(TypeError):
        watch_set.wallet_by_address["0x00"] = uuid.uuid4()  # type: ignore[index]


@pytest.mark.asyncio
async def test_load_watch_set(db: DatabaseManager) -> None:
    w1 = await seed_wallet(db, WALLET_1)
    await seed_wallet(db, WALLET_2, is_active=False)
    t1 = await seed_token(db, TOKEN_1)
    await seed_token(db, None, symbol="ETH")

    async with db.get_async_session() as session:
        watch_set = await load_watch_set(session, Chain.ETHEREUM)

    assert dict(watch_set.wallet_by_address) == {WALLET_1.lower(): w1}
    assert dict(watch_set.token_by_contract) == {TOKEN_1.lower(): t1}
