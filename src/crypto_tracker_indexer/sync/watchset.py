"""Per-cycle projection of the wallets and tokens a chain is watched for."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from crypto_tracker_indexer.models import Chain
from crypto_tracker_indexer.storage.repos import (
    TokenRepository,
    WalletRepository,
    WatchedTokenDTO,
    WatchedWalletDTO,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class WatchSet:
    """Immutable address lookups for one chain and one sync cycle.

    Keys are lower-cased hex addresses.
    """

    chain: Chain
    wallet_by_address: Mapping[str, uuid.UUID] = field(default_factory=lambda: MappingProxyType({}))
    token_by_contract: Mapping[str, uuid.UUID] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        chain: Chain,
        wallets: Iterable[WatchedWalletDTO],
        tokens: Iterable[WatchedTokenDTO],
    ) -> WatchSet:
        wallet_map = {w.address.lower(): w.id for w in wallets}
        token_map = {t.contract_address.lower(): t.id for t in tokens if t.contract_address}
        return cls(
            chain=chain,
            wallet_by_address=MappingProxyType(wallet_map),
            token_by_contract=MappingProxyType(token_map),
        )

    @property
    def wallet_count(self) -> int:
        return len(self.wallet_by_address)

    @property
    def token_count(self) -> int:
        return len(self.token_by_contract)

    @property
    def is_empty(self) -> bool:
        return not self.wallet_by_address

    def wallet_for(self, address: str | None) -> uuid.UUID | None:
        if not address:
            return None
        return self.wallet_by_address.get(address.lower())

    def token_for(self, contract: str | None) -> uuid.UUID | None:
        if not contract:
            return None
        return self.token_by_contract.get(contract.lower())


async def load_watch_set(session: AsyncSession, chain: Chain) -> WatchSet:
    """Read active wallets and token contracts for ``chain``."""
    wallets = await WalletRepository(session).list_active(chain)
    tokens = await TokenRepository(session).list_contracts(chain)
    return WatchSet.build(chain, wallets, tokens)
