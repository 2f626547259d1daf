"""EVM chain client with rate limiting, retries and failover.

This module provides the web3-backed chain reader used by the sync engine:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff
- Failover to a secondary RPC URL
- Normalization of RPC payloads into frozen dataclasses

Responses are never cached: block contents at a height can change under a
reorg, and the sync engine relies on seeing the chain as it is now.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from crypto_tracker_indexer.chain.base import BlockNotFoundError, RPCError
from crypto_tracker_indexer.chain.models import Block, EventLog, to_hex_str
from crypto_tracker_indexer.config import RpcSettings
from crypto_tracker_indexer.models import Chain

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30

_RETRYABLE_ERRORS = (Web3Exception, aiohttp.ClientError, TimeoutError)


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class EvmChainClient:
    """Chain reader for one EVM chain over JSON-RPC.

    Example:
        ```python
        client = EvmChainClient(
            Chain.ETHEREUM,
            rpc_url="https://eth.llamarpc.com",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
        )

        head = await client.latest_height()
        block = await client.block_by_height(head)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        chain: Chain,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the chain client.

        Args:
            chain: Chain this client reads.
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout_seconds: HTTP timeout for a single RPC request.
        """
        self.chain = chain
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    @classmethod
    def from_settings(cls, chain: Chain, rpc: RpcSettings) -> EvmChainClient:
        """Build a client for ``chain`` from RPC settings.

        Raises:
            ValueError: If no RPC URL is configured for ``chain``.
        """
        rpc_url = rpc.rpc_url_for(chain)
        if not rpc_url:
            raise ValueError(f"No RPC URL configured for {chain.value}")
        return cls(
            chain,
            rpc_url,
            fallback_rpc_url=rpc.fallback_rpc_url_for(chain),
            max_requests_per_second=rpc.max_requests_per_second,
            max_retries=rpc.max_retries,
            retry_delay_seconds=rpc.retry_delay_seconds,
            request_timeout_seconds=rpc.timeout_seconds,
        )

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._request_timeout)},
        )
        client = AsyncWeb3(provider)
        if self.chain is Chain.POLYGON:
            self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
        **kwargs: Any,
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args, **kwargs), None
            except BlockNotFound:
                raise
            except _RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed on %s (attempt %d/%d): %s",
                    label,
                    func_name,
                    self.chain.value,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _execute_with_retry(
        self,
        func_name: str,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.
            **kwargs: Keyword arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_endpoint(
                self._w3, "Primary", func_name, *args, **kwargs
            )
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, last_error = await self._call_endpoint(
                self._w3_fallback, "Fallback", func_name, *args, **kwargs
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s on %s", func_name, self.chain.value)
                return result

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def latest_height(self) -> int:
        """Get the number of the latest block header seen by the node."""
        header = await self._execute_with_retry("get_block", "latest")
        return int(header["number"])

    async def block_by_height(self, height: int) -> Block:
        """Get a block with full transaction objects.

        Raises:
            BlockNotFoundError: If the node has no block at ``height``.
            RPCError: If the call fails after retries.
        """
        if height < 0:
            raise ValueError("height must be >= 0")
        try:
            raw = await self._execute_with_retry("get_block", height, full_transactions=True)
        except BlockNotFound as e:
            raise BlockNotFoundError(f"Block {height} not found on {self.chain.value}") from e
        if raw is None:
            raise BlockNotFoundError(f"Block {height} not found on {self.chain.value}")
        return Block.from_rpc(raw)

    async def block_hash_by_height(self, height: int) -> str:
        """Get the canonical block hash at ``height``."""
        if height < 0:
            raise ValueError("height must be >= 0")
        try:
            raw = await self._execute_with_retry("get_block", height)
        except BlockNotFound as e:
            raise BlockNotFoundError(f"Block {height} not found on {self.chain.value}") from e
        if raw is None:
            raise BlockNotFoundError(f"Block {height} not found on {self.chain.value}")
        return to_hex_str(raw["hash"])

    async def get_logs(
        self,
        *,
        from_block: int,
        to_block: int,
        topics: Sequence[str | None],
    ) -> list[EventLog]:
        """Fetch logs via `eth_getLogs` over an inclusive block range."""
        if to_block < from_block:
            raise ValueError("to_block must be >= from_block")
        logs = await self._execute_with_retry(
            "get_logs",
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": list(topics),
            },
        )
        return [EventLog.from_rpc(log) for log in logs]

    async def balance_at(self, address: str, *, block_number: int | None = None) -> int:
        """Get the native balance of ``address`` in base units."""
        block_identifier: int | str = "latest" if block_number is None else block_number
        balance = await self._execute_with_retry(
            "get_balance",
            AsyncWeb3.to_checksum_address(address),
            block_identifier,
        )
        return int(balance)

    async def health_check(self) -> bool:
        """Check if the client can reach any RPC endpoint."""
        try:
            await self.latest_height()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
