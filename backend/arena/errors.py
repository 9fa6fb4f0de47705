"""Error taxonomy shared by the chain, sync, settlement and reward layers."""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for every error raised by the arena engine."""


class RpcError(ArenaError):
    """A JSON-RPC call failed for a reason retrying will not fix."""

    def __init__(self, message: str, *, code: int | None = None, data: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class TransientRpcError(RpcError):
    """Rate limiting or a network blip; surfaced only after retries are exhausted."""


class ReceiptTimeout(TransientRpcError):
    """A submitted transaction was not mined within the confirmation window."""

    def __init__(self, tx_hash: str, timeout: float) -> None:
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class UserCancelled(ArenaError):
    """The wallet prompt was dismissed; nothing was submitted."""


class ActionPreconditionError(ArenaError):
    """Local validation rejected an action before anything reached the chain."""


class SimulationRevert(ArenaError):
    """The contract call is predicted to revert; nothing was submitted."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class OnChainRevert(ArenaError):
    """The transaction was mined but failed."""

    def __init__(self, tx_hash: str, reason: str | None = None) -> None:
        message = f"Transaction {tx_hash} reverted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.tx_hash = tx_hash
        self.reason = reason


class VerificationFailure(ArenaError):
    """A reward grant was refused because its transaction could not be verified."""

    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    REVERTED = "reverted"
    SENDER_MISMATCH = "sender_mismatch"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class MirrorInconsistency(ArenaError):
    """The mirror diverged from chain state; resolved by overwriting from chain."""

    def __init__(self, market_id: int, fields: list[str]) -> None:
        super().__init__(
            f"Mirror row for market {market_id} diverged from chain on: {', '.join(fields)}"
        )
        self.market_id = market_id
        self.fields = fields


__all__ = [
    "ArenaError",
    "RpcError",
    "TransientRpcError",
    "ReceiptTimeout",
    "UserCancelled",
    "ActionPreconditionError",
    "SimulationRevert",
    "OnChainRevert",
    "VerificationFailure",
    "MirrorInconsistency",
]
