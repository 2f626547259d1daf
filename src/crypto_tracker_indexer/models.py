"""Core domain models shared by the sync engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

NATIVE_EVENT_KEY = "native"


class Chain(str, Enum):
    """Supported EVM chains."""

    ETHEREUM = "ETHEREUM"
    POLYGON = "POLYGON"
    ARBITRUM = "ARBITRUM"
    BASE = "BASE"

    @property
    def chain_id(self) -> int:
        return _CHAIN_IDS[self]


_CHAIN_IDS: dict[Chain, int] = {
    Chain.ETHEREUM: 1,
    Chain.POLYGON: 137,
    Chain.ARBITRUM: 42161,
    Chain.BASE: 8453,
}


class TransferType(str, Enum):
    """Kind of value movement a transfer row records."""

    TRANSFER = "TRANSFER"
    ERC20_TRANSFER = "ERC20_TRANSFER"


class TransferStatus(str, Enum):
    """Row status. The sync engine only ever writes CONFIRMED rows."""

    CONFIRMED = "CONFIRMED"


@dataclass(frozen=True)
class TransferRecord:
    """A wallet-attributed transfer extracted from the chain.

    Addresses keep their checksummed form for display; matching is always done
    on the lower-cased value. ``amount`` is the exact base-unit integer rendered
    as a decimal string.
    """

    time: datetime
    wallet_id: uuid.UUID
    hash: str
    chain: Chain
    from_address: str
    to_address: str
    amount: str
    block_number: int
    type: TransferType
    token_id: uuid.UUID | None = None
    log_index: int | None = None
    status: TransferStatus = TransferStatus.CONFIRMED
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def event_key(self) -> str:
        """Identity of the source event inside its transaction."""
        if self.log_index is None:
            return NATIVE_EVENT_KEY
        return str(self.log_index)

    @property
    def is_native(self) -> bool:
        return self.token_id is None
