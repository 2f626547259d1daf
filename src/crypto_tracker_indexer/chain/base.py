"""Capability set every chain reader implements."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from crypto_tracker_indexer.chain.models import Block, EventLog


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after retries and failover."""


class BlockNotFoundError(ChainClientError):
    """Raised when the node has no block at the requested height."""


@runtime_checkable
class ChainReader(Protocol):
    """Read-only access to one EVM chain.

    Implemented by the web3-backed client and by the in-memory chain used in
    tests and local runs.
    """

    async def latest_height(self) -> int: ...

    async def block_by_height(self, height: int) -> Block: ...

    async def block_hash_by_height(self, height: int) -> str: ...

    async def get_logs(
        self,
        *,
        from_block: int,
        to_block: int,
        topics: Sequence[str | None],
    ) -> list[EventLog]: ...

    async def balance_at(self, address: str, *, block_number: int | None = None) -> int: ...

    async def aclose(self) -> None: ...
