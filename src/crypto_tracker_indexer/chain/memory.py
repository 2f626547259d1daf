"""In-memory chain reader for tests and local runs."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field

from eth_utils import to_checksum_address

from crypto_tracker_indexer.chain.base import BlockNotFoundError
from crypto_tracker_indexer.chain.models import Block, ChainTransaction, EventLog, to_bytes


def synthetic_block_hash(number: int, salt: str = "") -> str:
    digest = hashlib.sha256(f"{number}:{salt}".encode()).hexdigest()
    return "0x" + digest


@dataclass
class InMemoryChain:
    """A mutable chain held in memory.

    Blocks are appended explicitly; ``replace_block`` swaps the content and
    hash at a height to simulate a reorganisation. Every block fetch is
    recorded in ``block_requests`` so callers can assert on RPC pressure.
    """

    blocks: dict[int, Block] = field(default_factory=dict)
    logs: list[EventLog] = field(default_factory=list)
    balances: dict[str, int] = field(default_factory=dict)
    block_requests: list[int] = field(default_factory=list)
    log_requests: list[tuple[int, int]] = field(default_factory=list)

    def add_block(
        self,
        number: int,
        *,
        timestamp: int,
        transactions: Sequence[ChainTransaction] = (),
        block_hash: str | None = None,
    ) -> Block:
        block = Block(
            number=number,
            hash=(block_hash or synthetic_block_hash(number)).lower(),
            timestamp=timestamp,
            transactions=tuple(transactions),
        )
        self.blocks[number] = block
        return block

    def add_empty_blocks(self, start: int, end: int, *, base_timestamp: int = 1_700_000_000) -> None:
        for number in range(start, end + 1):
            self.add_block(number, timestamp=base_timestamp + number * 12)

    def add_log(
        self,
        *,
        address: str,
        topics: Sequence[str | bytes],
        data: str | bytes,
        block_number: int,
        transaction_hash: str,
        log_index: int,
    ) -> EventLog:
        block = self.blocks.get(block_number)
        log = EventLog(
            address=to_checksum_address(address),
            topics=tuple(to_bytes(t) for t in topics),
            data=to_bytes(data),
            block_number=block_number,
            block_hash=block.hash if block is not None else None,
            transaction_hash=transaction_hash.lower(),
            log_index=log_index,
        )
        self.logs.append(log)
        return log

    def replace_block(self, number: int, *, salt: str = "reorg") -> Block:
        """Replace the block at ``number`` with an empty block carrying a new hash."""
        old = self.blocks[number]
        self.logs = [log for log in self.logs if log.block_number != number]
        return self.add_block(
            number,
            timestamp=old.timestamp,
            block_hash=synthetic_block_hash(number, salt),
        )

    async def latest_height(self) -> int:
        return max(self.blocks, default=0)

    async def block_by_height(self, height: int) -> Block:
        self.block_requests.append(height)
        try:
            return self.blocks[height]
        except KeyError:
            raise BlockNotFoundError(f"Block {height} not found") from None

    async def block_hash_by_height(self, height: int) -> str:
        try:
            return self.blocks[height].hash
        except KeyError:
            raise BlockNotFoundError(f"Block {height} not found") from None

    async def get_logs(
        self,
        *,
        from_block: int,
        to_block: int,
        topics: Sequence[str | None],
    ) -> list[EventLog]:
        self.log_requests.append((from_block, to_block))
        wanted = [to_bytes(t) if t is not None else None for t in topics]
        matched = []
        for log in self.logs:
            if not from_block <= log.block_number <= to_block:
                continue
            if any(
                want is not None and (i >= len(log.topics) or log.topics[i] != want)
                for i, want in enumerate(wanted)
            ):
                continue
            matched.append(log)
        return sorted(matched, key=lambda log: (log.block_number, log.log_index))

    async def balance_at(self, address: str, *, block_number: int | None = None) -> int:  # noqa: ARG002
        return self.balances.get(address.lower(), 0)

    async def aclose(self) -> None:
        return None
