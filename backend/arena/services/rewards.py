"""Reward-point ledger gateway gated on independent receipt verification."""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger
from web3 import Web3

from arena.core.config import settings
from arena.db import SessionFactory, session_scope
from arena.errors import VerificationFailure
from arena.repositories import RewardRepository
from onchain.receipts import ReceiptVerifier, VerificationStatus

CATEGORY_CREATE_MARKET = "PREDICTION_MARKET_CREATE"
CATEGORY_PLACE_BET = "PREDICTION_MARKET_BET"

REWARD_SOURCES = ("web", "farcaster", "base_app")
_TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalize_source(source: str | None) -> str:
    candidate = (source or "").strip().lower()
    return candidate if candidate in REWARD_SOURCES else "web"


@dataclass(slots=True, frozen=True)
class RewardGrantResult:
    new_total: int
    granted: bool


class RewardGateway:
    """Credits points only for transactions that verifiably came from the wallet.

    Every failure path raises :class:`VerificationFailure` before the ledger is
    touched. Crediting is idempotent per transaction hash, so replays of the
    same hash return the current total with ``granted=False``.
    """

    def __init__(
        self,
        verifier: ReceiptVerifier | None = None,
        *,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._verifier = verifier or ReceiptVerifier()
        self._session_factory = session_factory

    @staticmethod
    def _validate(wallet: str, amount: int, category: str, tx_hash: str) -> None:
        if not wallet or not Web3.is_address(wallet):
            raise VerificationFailure(VerificationFailure.INVALID_REQUEST, "Invalid wallet address")
        if not category or not category.strip():
            raise VerificationFailure(VerificationFailure.INVALID_REQUEST, "Missing reward category")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise VerificationFailure(VerificationFailure.INVALID_REQUEST, "Reward amount must be positive")
        if not tx_hash or not _TX_HASH_PATTERN.match(tx_hash):
            raise VerificationFailure(VerificationFailure.INVALID_REQUEST, "Invalid transaction hash")

    async def grant_if_verified(
        self,
        wallet: str,
        amount: int,
        category: str,
        tx_hash: str,
        chain_id: int | None = None,
        source: str | None = None,
    ) -> RewardGrantResult:
        self._validate(wallet, amount, category, tx_hash)
        tx_hash = tx_hash.lower()
        chain_id = chain_id or settings.chain_id
        wallet_lower = wallet.lower()

        verification = await self._verifier.verify(tx_hash, chain_id)
        if verification.status is VerificationStatus.NOT_FOUND:
            raise VerificationFailure(
                VerificationFailure.NOT_FOUND, f"Transaction {tx_hash} not found on chain {chain_id}"
            )
        if verification.status is VerificationStatus.REVERTED:
            raise VerificationFailure(VerificationFailure.REVERTED, f"Transaction {tx_hash} failed")
        if verification.sender != wallet_lower:
            logger.warning(
                "Reward refused for {}: tx {} was sent by {}", wallet_lower, tx_hash, verification.sender
            )
            raise VerificationFailure(
                VerificationFailure.SENDER_MISMATCH, "Transaction sender does not match wallet"
            )

        with session_scope(self._session_factory) as session:
            outcome = RewardRepository(session).credit(
                wallet=wallet_lower,
                points=amount,
                category=category.strip(),
                source=normalize_source(source),
                tx_hash=tx_hash,
                chain_id=chain_id,
            )

        if outcome.granted:
            logger.info(
                "Granted {} {} points to {} for {} (total={})",
                amount,
                category,
                wallet_lower,
                tx_hash,
                outcome.new_total,
            )
        else:
            logger.info("Reward for {} already granted; total for {} unchanged", tx_hash, wallet_lower)
        return RewardGrantResult(new_total=outcome.new_total, granted=outcome.granted)

    async def aclose(self) -> None:
        await self._verifier.aclose()


__all__ = [
    "CATEGORY_CREATE_MARKET",
    "CATEGORY_PLACE_BET",
    "REWARD_SOURCES",
    "RewardGateway",
    "RewardGrantResult",
    "normalize_source",
]
