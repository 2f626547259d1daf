"""Event publication - subjects, payloads and the bus publisher."""

from crypto_tracker_indexer.events.models import TransactionFoundEvent
from crypto_tracker_indexer.events.publisher import EventPublisher
from crypto_tracker_indexer.events.subjects import (
    BLOCK_PROCESSED,
    INDEXER_STATUS,
    RESERVED_SUBJECTS,
    TOKEN_TRANSFER_FOUND,
    TRANSACTION_FOUND,
    WALLET_BALANCE_UPDATE,
)

__all__ = [
    "BLOCK_PROCESSED",
    "INDEXER_STATUS",
    "RESERVED_SUBJECTS",
    "TOKEN_TRANSFER_FOUND",
    "TRANSACTION_FOUND",
    "WALLET_BALANCE_UPDATE",
    "EventPublisher",
    "TransactionFoundEvent",
]
