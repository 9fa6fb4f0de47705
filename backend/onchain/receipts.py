"""Independent receipt verification used to gate reward grants."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from loguru import logger

from arena.core.config import settings
from arena.errors import RpcError

from .abi import normalize_address
from .client import ChainReader, Sleep, receipt_succeeded


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    REVERTED = "reverted"


@dataclass(slots=True)
class ReceiptVerification:
    status: VerificationStatus
    sender: str | None = None
    receipt: dict[str, Any] | None = field(default=None, repr=False)

    @property
    def verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED


class ReceiptVerifier:
    """Looks up a transaction receipt on the chain it claims to live on.

    The first lookup happens after a short propagation delay; afterwards the
    verifier polls a bounded number of times. RPC failures while polling are
    treated as "not mined yet" so a flaky endpoint degrades to NOT_FOUND instead
    of raising.
    """

    def __init__(
        self,
        *,
        rpc_urls: dict[int, str] | None = None,
        initial_delay: float | None = None,
        attempts: int | None = None,
        interval: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._rpc_urls = dict(rpc_urls) if rpc_urls is not None else None
        self.initial_delay = (
            settings.receipt_initial_delay_seconds if initial_delay is None else initial_delay
        )
        self.attempts = attempts or settings.receipt_poll_attempts
        self.interval = settings.receipt_poll_interval_seconds if interval is None else interval
        self._transport = transport
        self._sleep = sleep
        self._readers: dict[str, ChainReader] = {}

    def rpc_url_for(self, chain_id: int | None) -> str:
        chain = chain_id or 8453
        if self._rpc_urls is not None:
            return self._rpc_urls.get(chain) or self._rpc_urls.get(8453) or settings.rpc_url_for_chain(chain)
        return settings.rpc_url_for_chain(chain)

    def _reader_for(self, chain_id: int | None) -> ChainReader:
        url = self.rpc_url_for(chain_id)
        reader = self._readers.get(url)
        if reader is None:
            reader = ChainReader(
                rpc_url=url,
                fallback_rpc_url="",
                transport=self._transport,
                sleep=self._sleep,
            )
            self._readers[url] = reader
        return reader

    async def verify(self, tx_hash: str, chain_id: int | None = None) -> ReceiptVerification:
        reader = self._reader_for(chain_id)
        if self.initial_delay:
            await self._sleep(self.initial_delay)

        receipt: dict[str, Any] | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                receipt = await reader.get_transaction_receipt(tx_hash)
            except RpcError as exc:
                logger.debug(
                    "Receipt lookup {} attempt {}/{} failed: {}", tx_hash, attempt, self.attempts, exc
                )
                receipt = None
            if receipt:
                break
            if attempt < self.attempts and self.interval:
                await self._sleep(self.interval)

        if not receipt:
            logger.info("Receipt {} not found on chain {} after {} attempts", tx_hash, chain_id, self.attempts)
            return ReceiptVerification(status=VerificationStatus.NOT_FOUND)

        sender = normalize_address(receipt.get("from")) or None
        if not receipt_succeeded(receipt):
            return ReceiptVerification(status=VerificationStatus.REVERTED, sender=sender, receipt=receipt)
        return ReceiptVerification(status=VerificationStatus.VERIFIED, sender=sender, receipt=receipt)

    async def aclose(self) -> None:
        for reader in self._readers.values():
            await reader.aclose()
        self._readers.clear()


__all__ = ["ReceiptVerification", "ReceiptVerifier", "VerificationStatus"]
