"""Chain access - RPC client, normalized chain data and test doubles."""

from crypto_tracker_indexer.chain.base import (
    BlockNotFoundError,
    ChainClientError,
    ChainReader,
    RPCError,
)
from crypto_tracker_indexer.chain.client import EvmChainClient
from crypto_tracker_indexer.chain.memory import InMemoryChain
from crypto_tracker_indexer.chain.models import Block, ChainTransaction, EventLog

__all__ = [
    "Block",
    "BlockNotFoundError",
    "ChainClientError",
    "ChainReader",
    "ChainTransaction",
    "EventLog",
    "EvmChainClient",
    "InMemoryChain",
    "RPCError",
]
