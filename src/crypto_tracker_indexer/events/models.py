"""Event payloads published on the message bus."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from crypto_tracker_indexer.models import Chain, TransferRecord, TransferType


@dataclass(frozen=True)
class TransactionFoundEvent:
    """Notification that a transfer touching a watched wallet was committed.

    Consumers deduplicate on ``(chain, hash, wallet_id, token_id, log_index)``;
    delivery is at-least-once.
    """

    chain: Chain
    hash: str
    block_number: int
    from_address: str
    to_address: str
    amount: str
    timestamp: datetime
    wallet_id: uuid.UUID
    type: TransferType
    token_id: uuid.UUID | None = None
    log_index: int | None = None

    @classmethod
    def from_record(cls, record: TransferRecord) -> TransactionFoundEvent:
        return cls(
            chain=record.chain,
            hash=record.hash,
            block_number=record.block_number,
            from_address=record.from_address,
            to_address=record.to_address,
            amount=record.amount,
            timestamp=record.time,
            wallet_id=record.wallet_id,
            type=record.type,
            token_id=record.token_id,
            log_index=record.log_index,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "chain": self.chain.value,
                "hash": self.hash,
                "block_number": self.block_number,
                "from": self.from_address,
                "to": self.to_address,
                "amount": self.amount,
                "timestamp": self.timestamp.astimezone(UTC).isoformat(),
                "wallet_id": str(self.wallet_id),
                "token_id": str(self.token_id) if self.token_id is not None else None,
                "log_index": self.log_index,
                "type": self.type.value,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> TransactionFoundEvent:
        data = json.loads(raw)
        return cls(
            chain=Chain(data["chain"]),
            hash=str(data["hash"]),
            block_number=int(data["block_number"]),
            from_address=str(data["from"]),
            to_address=str(data["to"]),
            amount=str(data["amount"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            wallet_id=uuid.UUID(str(data["wallet_id"])),
            type=TransferType(data["type"]),
            token_id=uuid.UUID(str(t)) if (t := data.get("token_id")) is not None else None,
            log_index=int(i) if (i := data.get("log_index")) is not None else None,
        )
