"""Message bus subjects.

Only ``TRANSACTION_FOUND`` is produced by the sync engine. The rest are
reserved so consumers and future producers agree on the names.
"""

TRANSACTION_FOUND = "indexer.transaction.found"
TOKEN_TRANSFER_FOUND = "indexer.token_transfer.found"
WALLET_BALANCE_UPDATE = "indexer.wallet.balance_update"
BLOCK_PROCESSED = "indexer.block.processed"
INDEXER_STATUS = "indexer.status"

RESERVED_SUBJECTS = frozenset(
    {
        TOKEN_TRANSFER_FOUND,
        WALLET_BALANCE_UPDATE,
        BLOCK_PROCESSED,
        INDEXER_STATUS,
    }
)
