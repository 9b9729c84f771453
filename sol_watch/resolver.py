from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Protocol

from .records import ResolvedTransaction
from .rpc import RpcError
from .ws_primitives import RetryPolicy


class ReadConnection(Protocol):
    async def get_transaction(
        self, signature: str, commitment: str
    ) -> ResolvedTransaction | None: ...

    async def get_block_time_ms(self, slot: int) -> int | None: ...


class NotYetAvailable:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_YET_AVAILABLE"


NOT_YET_AVAILABLE = NotYetAvailable()


class ResolveError(Exception):
    def __init__(self, tag: str, message: str) -> None:
        super().__init__(message)
        self.tag = tag


@dataclass(slots=True)
class ResolverStats:
    fetch_attempts: int = 0
    not_found: int = 0
    not_yet_available: int = 0
    inline: int = 0
    block_time_fallbacks: int = 0
    block_time_failures: int = 0


class TransactionResolver:
    def __init__(
        self,
        connection: ReadConnection,
        *,
        retry: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._connection = connection
        self._retry = retry
        self._sleep = sleep
        self.stats = ResolverStats()

    async def resolve(
        self,
        signature: str,
        commitment: str,
        *,
        inline: ResolvedTransaction | None = None,
    ) -> ResolvedTransaction | NotYetAvailable:
        if inline is not None:
            self.stats.inline += 1
            tx: ResolvedTransaction | None = inline
        else:
            tx = await self._fetch(signature, commitment)
            if tx is None:
                self.stats.not_yet_available += 1
                return NOT_YET_AVAILABLE
        if tx.block_time_ms is None:
            tx = replace(tx, block_time_ms=await self._block_time_fallback(tx.slot))
        return tx

    async def _fetch(self, signature: str, commitment: str) -> ResolvedTransaction | None:
        attempts = self._retry.attempts()
        for attempt in range(1, attempts + 1):
            self.stats.fetch_attempts += 1
            try:
                tx = await self._connection.get_transaction(signature, commitment)
            except RpcError as exc:
                raise ResolveError(exc.tag, str(exc)) from exc
            if tx is not None:
                return tx
            # Not visible yet: the notification usually outruns the RPC node.
            self.stats.not_found += 1
            if attempt < attempts:
                await self._sleep(self._retry.delay(attempt))
        return None

    async def _block_time_fallback(self, slot: int) -> int | None:
        self.stats.block_time_fallbacks += 1
        try:
            return await self._connection.get_block_time_ms(slot)
        except RpcError:
            self.stats.block_time_failures += 1
            return None
