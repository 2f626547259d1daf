"""Storage layer - Database schemas and repositories."""

from crypto_tracker_indexer.storage.database import DatabaseManager, normalize_async_database_url
from crypto_tracker_indexer.storage.models import (
    Base,
    ChainCursorModel,
    TokenModel,
    TransferModel,
    WalletModel,
)
from crypto_tracker_indexer.storage.repos import (
    ChainCursorDTO,
    ChainCursorRepository,
    PersistenceError,
    TokenRepository,
    TransferRepository,
    WalletRepository,
    WatchedTokenDTO,
    WatchedWalletDTO,
)

__all__ = [
    "Base",
    "ChainCursorDTO",
    "ChainCursorModel",
    "ChainCursorRepository",
    "DatabaseManager",
    "PersistenceError",
    "TokenModel",
    "TokenRepository",
    "TransferModel",
    "TransferRepository",
    "WalletModel",
    "WalletRepository",
    "WatchedTokenDTO",
    "WatchedWalletDTO",
    "normalize_async_database_url",
]
