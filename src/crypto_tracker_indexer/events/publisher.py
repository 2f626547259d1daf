"""Event-bus publisher for committed transfers.

The publisher talks to anything with an awaitable ``publish(subject, payload)``.
In production that is a ``nats.aio.client.Client`` (the default) or a
``redis.asyncio.Redis`` client when ``EVENT_BUS=redis``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import nats.errors
from redis.exceptions import RedisError

from crypto_tracker_indexer.events.models import TransactionFoundEvent
from crypto_tracker_indexer.events.subjects import TRANSACTION_FOUND
from crypto_tracker_indexer.models import TransferRecord

logger = logging.getLogger(__name__)

PUBLISH_ERRORS = (nats.errors.Error, RedisError, OSError)


class BusClient(Protocol):
    async def publish(self, subject: str, payload: bytes) -> Any: ...


class EventPublisher:
    """Publishes one ``indexer.transaction.found`` message per transfer.

    Callers invoke it only after the batch has committed. A failed message is
    logged and counted; it never propagates, since the rows are already durable.
    """

    def __init__(self, bus: BusClient, *, subject: str = TRANSACTION_FOUND) -> None:
        self._bus = bus
        self._subject = subject
        self._failures = 0

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def failures(self) -> int:
        """Messages that could not be published since startup."""
        return self._failures

    async def publish_transfers(self, records: Sequence[TransferRecord]) -> int:
        """Publish every record in order.

        Returns:
            Number of messages handed to the bus.
        """
        published = 0
        for record in records:
            event = TransactionFoundEvent.from_record(record)
            try:
                await self._bus.publish(self._subject, event.to_json().encode())
            except PUBLISH_ERRORS as e:
                self._failures += 1
                logger.error(
                    "Failed to publish %s %s (wallet=%s): %s",
                    record.chain.value,
                    record.hash,
                    record.wallet_id,
                    e,
                )
                continue
            published += 1
        return published
