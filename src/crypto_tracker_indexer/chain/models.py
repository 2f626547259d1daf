"""Normalized chain data returned by chain readers.

RPC providers hand back loosely-typed mappings (``AttributeDict`` with
``HexBytes`` values for web3). Everything past the chain client works with
these frozen dataclasses instead: hashes are lower-case ``0x`` strings,
addresses are checksummed strings and quantities are Python ints.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from eth_utils import is_address, to_checksum_address
from web3 import Web3


def to_hex_str(value: Any) -> str:
    """Render bytes-like or hex values as a lower-case 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Web3.to_hex(bytes(value)).lower()
    text = str(value)
    if not text.startswith(("0x", "0X")):
        text = "0x" + text
    return text.lower()


def to_bytes(value: Any) -> bytes:
    """Decode bytes-like or hex string values into raw bytes."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


def _optional_address(value: Any) -> str | None:
    if value is None or value == "":
        return None
    text = str(value)
    if not is_address(text):
        return None
    return to_checksum_address(text)


def _quantity(value: Any) -> int:
    """Parse an RPC quantity given as int, bytes or hex/decimal string."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return int.from_bytes(bytes(value), "big")
    text = str(value)
    if text.startswith(("0x", "0X")):
        return int(text[2:] or "0", 16)
    return int(text)


# Protocol-injected transaction types that carry no ECDSA signature:
# OP-stack deposits and the Arbitrum system/retryable family.
UNSIGNED_TX_TYPES = frozenset({0x64, 0x65, 0x66, 0x68, 0x69, 0x6A, 0x7E})


def _has_signature(data: Mapping[str, Any]) -> bool:
    if _quantity(data.get("type")) in UNSIGNED_TX_TYPES:
        return False
    return _quantity(data.get("r")) != 0 and _quantity(data.get("s")) != 0


@dataclass(frozen=True)
class ChainTransaction:
    """A transaction as included in a block.

    ``sender`` is the signer the node recovered from the transaction's
    signature. It is None when the transaction is unsigned (system and deposit
    types, or a zero/missing ``r``/``s``) or the payload carried no usable
    ``from``.
    """

    hash: str
    index: int
    sender: str | None
    to: str | None
    value: int
    chain_id: int | None = None
    tx_type: int = 0

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> ChainTransaction:
        chain_id = data.get("chainId")
        return cls(
            hash=to_hex_str(data["hash"]),
            index=_quantity(data.get("transactionIndex")),
            sender=_optional_address(data.get("from")) if _has_signature(data) else None,
            to=_optional_address(data.get("to")),
            value=_quantity(data.get("value")),
            chain_id=_quantity(chain_id) if chain_id is not None else None,
            tx_type=_quantity(data.get("type")),
        )


@dataclass(frozen=True)
class Block:
    """A block with its full transactions."""

    number: int
    hash: str
    timestamp: int
    transactions: tuple[ChainTransaction, ...] = ()

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> Block:
        transactions = tuple(
            ChainTransaction.from_rpc(tx)
            for tx in data.get("transactions") or ()
            if isinstance(tx, Mapping)
        )
        return cls(
            number=int(data["number"]),
            hash=to_hex_str(data["hash"]),
            timestamp=int(data["timestamp"]),
            transactions=transactions,
        )


@dataclass(frozen=True)
class EventLog:
    """A log entry returned by ``eth_getLogs``."""

    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    block_hash: str | None
    transaction_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> EventLog:
        block_hash = data.get("blockHash")
        return cls(
            address=to_checksum_address(str(data["address"])),
            topics=tuple(to_bytes(t) for t in data.get("topics") or ()),
            data=to_bytes(data.get("data") or b""),
            block_number=int(data["blockNumber"]),
            block_hash=to_hex_str(block_hash) if block_hash is not None else None,
            transaction_hash=to_hex_str(data["transactionHash"]),
            log_index=int(data.get("logIndex") or 0),
        )
