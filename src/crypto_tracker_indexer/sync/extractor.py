"""Transfer extraction over a block range.

For each block in the range the full block is fetched and its transactions are
matched against the watched wallets (native value transfers). A single
``eth_getLogs`` query then collects ERC-20 ``Transfer`` events for the whole
range, which are matched against both watched wallets and known token
contracts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType

from eth_utils import to_checksum_address

from crypto_tracker_indexer.chain.base import ChainReader
from crypto_tracker_indexer.chain.models import Block, EventLog, to_bytes
from crypto_tracker_indexer.models import Chain, TransferRecord, TransferType
from crypto_tracker_indexer.storage.types import UINT256_MAX
from crypto_tracker_indexer.sync.watchset import WatchSet
from crypto_tracker_indexer.telemetry import get_meter, get_tracer

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
_TRANSFER_TOPIC_BYTES = to_bytes(TRANSFER_EVENT_TOPIC)

DEFAULT_CONCURRENCY = 4

_tracer = get_tracer()
_block_duration = get_meter().create_histogram(
    "indexer.block.process.duration",
    unit="s",
    description="Time spent fetching and matching one block",
)


class ExtractionError(Exception):
    """Base exception for extraction errors."""


class PartialExtractionError(ExtractionError):
    """Raised when the log query fails after native transfers were collected.

    The collected records are attached for diagnostics; callers must not
    persist them, since token transfers for the same range are missing.
    """

    def __init__(self, message: str, records: Sequence[TransferRecord]) -> None:
        super().__init__(message)
        self.records = tuple(records)


class ChainInconsistencyError(ExtractionError):
    """Raised when logs and blocks disagree about the chain at a height."""


@dataclass(frozen=True)
class ExtractionResult:
    """Records extracted from one block range plus the headers they came from."""

    start: int
    end: int
    records: tuple[TransferRecord, ...] = ()
    block_times: Mapping[int, datetime] = field(default_factory=lambda: MappingProxyType({}))
    block_hashes: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def blocks_processed(self) -> int:
        return self.end - self.start + 1

    @property
    def native_count(self) -> int:
        return sum(1 for r in self.records if r.type == TransferType.TRANSFER)

    @property
    def token_count(self) -> int:
        return sum(1 for r in self.records if r.type == TransferType.ERC20_TRANSFER)

    @property
    def end_hash(self) -> str | None:
        """Hash of the last block in the range."""
        return self.block_hashes.get(self.end)


def _block_time(block: Block) -> datetime:
    return datetime.fromtimestamp(block.timestamp, tz=UTC)


def _topic_address(topic: bytes) -> str | None:
    if len(topic) != 32:
        return None
    return to_checksum_address("0x" + topic[-20:].hex())


class TransferExtractor:
    """Extracts watched-wallet transfers from a chain.

    Example:
        ```python
        extractor = TransferExtractor(client, Chain.ETHEREUM, concurrency=4)
        result = await extractor.extract(101, 200, watch_set)
        ```
    """

    def __init__(
        self,
        chain_reader: ChainReader,
        chain: Chain,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        """Initialize the extractor.

        Args:
            chain_reader: Source of blocks and logs.
            chain: Chain the records are attributed to.
            concurrency: Maximum simultaneous block fetches.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._reader = chain_reader
        self._chain = chain
        self._concurrency = concurrency

    @property
    def chain(self) -> Chain:
        return self._chain

    async def extract(self, start: int, end: int, watch_set: WatchSet) -> ExtractionResult:
        """Extract transfers for blocks ``start..end`` inclusive.

        Native transfers come first, in block then transaction order, followed
        by token transfers in log order.

        Raises:
            ChainClientError: If a block cannot be fetched.
            PartialExtractionError: If the log query fails.
            ChainInconsistencyError: If a log references a block hash other
                than the one fetched for its height.
        """
        if start > end:
            raise ValueError(f"Empty block range {start}..{end}")

        with _tracer.start_as_current_span("extract-blocks") as span:
            span.set_attribute("chain", self._chain.value)
            span.set_attribute("block.start", start)
            span.set_attribute("block.end", end)

            blocks = await self._fetch_blocks(start, end)
            block_times = {b.number: _block_time(b) for b in blocks}
            block_hashes = {b.number: b.hash for b in blocks}

            records: list[TransferRecord] = []
            for block in blocks:
                records.extend(self._native_transfers(block, watch_set, block_times[block.number]))
            native_count = len(records)

            try:
                logs = await self._reader.get_logs(
                    from_block=start,
                    to_block=end,
                    topics=[TRANSFER_EVENT_TOPIC],
                )
            except Exception as e:
                raise PartialExtractionError(
                    f"Log query for blocks {start}..{end} failed: {e}", records
                ) from e

            for log in logs:
                record = self._token_transfer(log, watch_set, block_times, block_hashes)
                if record is not None:
                    records.append(record)

            span.set_attribute("transfers.native", native_count)
            span.set_attribute("transfers.token", len(records) - native_count)

        logger.debug(
            "%s blocks %d..%d: %d native, %d token transfers",
            self._chain.value,
            start,
            end,
            native_count,
            len(records) - native_count,
        )
        return ExtractionResult(
            start=start,
            end=end,
            records=tuple(records),
            block_times=MappingProxyType(block_times),
            block_hashes=MappingProxyType(block_hashes),
        )

    async def _fetch_blocks(self, start: int, end: int) -> list[Block]:
        """Fetch every block in the range, bounded by the concurrency limit.

        Results keep range order. The first failure is re-raised once every
        in-flight fetch has settled.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        heights = list(range(start, end + 1))

        async def fetch_one(height: int) -> Block:
            async with semaphore:
                started = time.perf_counter()
                block = await self._reader.block_by_height(height)
                _block_duration.record(
                    time.perf_counter() - started, {"chain": self._chain.value}
                )
                return block

        results = await asyncio.gather(*(fetch_one(h) for h in heights), return_exceptions=True)
        blocks: list[Block] = []
        for height, result in zip(heights, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("Failed to fetch %s block %d: %s", self._chain.value, height, result)
                raise result
            blocks.append(result)
        return blocks

    def _native_transfers(
        self, block: Block, watch_set: WatchSet, block_time: datetime
    ) -> list[TransferRecord]:
        records: list[TransferRecord] = []
        for tx in block.transactions:
            if tx.sender is None:
                logger.debug("Skipping tx %s: sender not recoverable", tx.hash)
                continue
            to_address = tx.to or ""

            # from first, then to: a self-transfer yields one record
            wallet_id = watch_set.wallet_for(tx.sender) or watch_set.wallet_for(to_address)
            if wallet_id is None:
                continue

            records.append(
                TransferRecord(
                    time=block_time,
                    wallet_id=wallet_id,
                    hash=tx.hash,
                    chain=self._chain,
                    from_address=tx.sender,
                    to_address=to_address,
                    amount=str(tx.value),
                    block_number=block.number,
                    type=TransferType.TRANSFER,
                )
            )
        return records

    def _token_transfer(
        self,
        log: EventLog,
        watch_set: WatchSet,
        block_times: Mapping[int, datetime],
        block_hashes: Mapping[int, str],
    ) -> TransferRecord | None:
        if len(log.topics) != 3 or log.topics[0] != _TRANSFER_TOPIC_BYTES:
            return None

        from_address = _topic_address(log.topics[1])
        to_address = _topic_address(log.topics[2])
        if from_address is None or to_address is None:
            logger.debug("Skipping log %s:%d: malformed address topic", log.transaction_hash, log.log_index)
            return None

        wallet_id = watch_set.wallet_for(from_address) or watch_set.wallet_for(to_address)
        if wallet_id is None:
            return None
        token_id = watch_set.token_for(log.address)
        if token_id is None:
            return None

        amount = int.from_bytes(log.data, "big")
        if amount > UINT256_MAX:
            logger.debug("Skipping log %s:%d: amount exceeds uint256", log.transaction_hash, log.log_index)
            return None

        block_time = block_times.get(log.block_number)
        expected_hash = block_hashes.get(log.block_number)
        if block_time is None or expected_hash is None:
            raise ChainInconsistencyError(
                f"Log {log.transaction_hash}:{log.log_index} references block "
                f"{log.block_number} outside the fetched range"
            )
        if log.block_hash is not None and log.block_hash != expected_hash:
            raise ChainInconsistencyError(
                f"Block {log.block_number} hash changed during extraction: "
                f"fetched {expected_hash}, log reports {log.block_hash}"
            )

        return TransferRecord(
            time=block_time,
            wallet_id=wallet_id,
            hash=log.transaction_hash,
            chain=self._chain,
            from_address=from_address,
            to_address=to_address,
            amount=str(amount),
            block_number=log.block_number,
            type=TransferType.ERC20_TRANSFER,
            token_id=token_id,
            log_index=log.log_index,
        )
