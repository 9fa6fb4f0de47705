"""Encoding and decoding for the prediction arena contract.

Function calls are a 4-byte keccak selector followed by ABI-encoded arguments.
Event logs are matched on topic0 (the keccak of the event signature) and turned
into one frozen dataclass per event kind; anything unrecognized is skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from loguru import logger
from web3 import Web3

from arena.domain import MarketImbalance, MarketSnapshot, UserStakes, WinningSide

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")
MARKET_TUPLE = "(string,address,uint64,uint256,uint256,bool,uint8,uint256,uint256)"


def to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def to_hex(value: bytes) -> str:
    return Web3.to_hex(value)


def normalize_address(value: Any) -> str:
    if not value or not isinstance(value, str):
        return ""
    return value.strip().lower()


@dataclass(frozen=True)
class ContractFunction:
    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    def __call__(self, *args: Any) -> "ContractCall":
        if len(args) != len(self.inputs):
            raise TypeError(
                f"{self.signature} expects {len(self.inputs)} arguments, got {len(args)}"
            )
        return ContractCall(self, tuple(args))

    def encode_input(self, args: Iterable[Any]) -> str:
        return to_hex(self.selector + encode(list(self.inputs), list(args)))

    def decode_output(self, data: Any) -> Any:
        raw = to_bytes(data)
        if not self.outputs:
            return None
        values = decode(list(self.outputs), raw)
        return values[0] if len(values) == 1 else tuple(values)

    def encode_output(self, *values: Any) -> str:
        return to_hex(encode(list(self.outputs), list(values)))


@dataclass(frozen=True)
class ContractCall:
    function: ContractFunction
    args: tuple[Any, ...] = ()

    @property
    def data(self) -> str:
        return self.function.encode_input(self.args)

    def describe(self) -> str:
        rendered = ", ".join(str(arg) for arg in self.args)
        return f"{self.function.name}({rendered})"


class ArenaContract:
    """Function table for the tug-of-war prediction contract."""

    market_count = ContractFunction("marketCount", (), ("uint256",))
    get_market = ContractFunction("getMarket", ("uint256",), (MARKET_TUPLE,))
    get_user_stakes = ContractFunction(
        "getUserStakes", ("uint256", "address"), ("uint256", "uint256")
    )
    get_claimable = ContractFunction("getClaimable", ("uint256", "address"), ("uint256",))
    get_market_imbalance = ContractFunction(
        "getMarketImbalance", ("uint256",), ("uint256", "uint256", "uint256", "bool")
    )
    is_bet_locked = ContractFunction("isBetLocked", ("uint256",), ("bool",))
    create_fee = ContractFunction("createFeeEth", (), ("uint256",))
    platform_fee_bps = ContractFunction("platformFeeBps", (), ("uint256",))
    max_bet_per_user = ContractFunction("maxBetPerUser", (), ("uint256",))
    lock_window = ContractFunction("lockWindowSeconds", (), ("uint256",))
    min_duration = ContractFunction("minDurationSeconds", (), ("uint256",))
    max_duration = ContractFunction("maxDurationSeconds", (), ("uint256",))

    create_market = ContractFunction("createMarket", ("string", "uint256"), ("uint256",))
    bet = ContractFunction("bet", ("uint256", "bool"))
    resolve = ContractFunction("resolve", ("uint256",))
    claim = ContractFunction("claim", ("uint256",), ("uint256",))


def parse_market(market_id: int, raw: tuple[Any, ...]) -> MarketSnapshot:
    (
        question,
        creator,
        end_time,
        total_yes,
        total_no,
        resolved,
        winning_side,
        fee_amount,
        distributable_pool,
    ) = raw
    try:
        side = WinningSide(int(winning_side))
    except ValueError:
        side = WinningSide.UNSET
    return MarketSnapshot(
        market_id=market_id,
        question=question,
        creator=normalize_address(creator),
        end_time=int(end_time),
        total_yes=int(total_yes),
        total_no=int(total_no),
        resolved=bool(resolved),
        winning_side=side,
        fee_amount=int(fee_amount),
        distributable_pool=int(distributable_pool),
    )


def parse_imbalance(raw: tuple[Any, ...]) -> MarketImbalance:
    yes_total, no_total, imbalance_bps, is_warning = raw
    return MarketImbalance(
        yes_total=int(yes_total),
        no_total=int(no_total),
        imbalance_bps=int(imbalance_bps),
        is_warning=bool(is_warning),
    )


def parse_user_stakes(raw: tuple[Any, ...]) -> UserStakes:
    yes_stake, no_stake = raw
    return UserStakes(yes_stake=int(yes_stake), no_stake=int(no_stake))


def decode_revert_reason(data: Any) -> str | None:
    try:
        raw = to_bytes(data)
    except (TypeError, ValueError):
        return None
    if raw[:4] != ERROR_STRING_SELECTOR:
        return None
    try:
        (reason,) = decode(["string"], raw[4:])
    except DecodingError:
        return None
    return reason


# ----------------------------------------------------------------------
# Events


@dataclass(slots=True, frozen=True)
class MarketCreated:
    market_id: int
    creator: str
    question: str
    end_time: int


@dataclass(slots=True, frozen=True)
class BetPlaced:
    market_id: int
    user: str
    for_yes: bool
    amount: int


@dataclass(slots=True, frozen=True)
class MarketResolved:
    market_id: int
    winning_side: WinningSide
    fee_amount: int


@dataclass(slots=True, frozen=True)
class Claimed:
    market_id: int
    user: str
    payout: int


ArenaEvent = Union[MarketCreated, BetPlaced, MarketResolved, Claimed]


@dataclass(frozen=True)
class EventSpec:
    name: str
    # (argument name, abi type, indexed)
    inputs: tuple[tuple[str, str, bool], ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(abi_type for _, abi_type, _ in self.inputs)})"

    @property
    def topic(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature))

    def decode(self, topics: list[bytes], data: bytes) -> dict[str, Any]:
        indexed = [(name, abi_type) for name, abi_type, is_indexed in self.inputs if is_indexed]
        plain = [(name, abi_type) for name, abi_type, is_indexed in self.inputs if not is_indexed]
        if len(topics) != len(indexed) + 1:
            raise DecodingError(f"{self.name} expects {len(indexed)} indexed topics")
        values: dict[str, Any] = {}
        for (name, abi_type), topic in zip(indexed, topics[1:]):
            (values[name],) = decode([abi_type], topic)
        if plain:
            decoded = decode([abi_type for _, abi_type in plain], data)
            values.update({name: value for (name, _), value in zip(plain, decoded)})
        return values

    def encode_log(self, address: str, **values: Any) -> dict[str, Any]:
        topics = [to_hex(self.topic)]
        plain_types: list[str] = []
        plain_values: list[Any] = []
        for name, abi_type, is_indexed in self.inputs:
            if is_indexed:
                topics.append(to_hex(encode([abi_type], [values[name]])))
            else:
                plain_types.append(abi_type)
                plain_values.append(values[name])
        return {
            "address": address,
            "topics": topics,
            "data": to_hex(encode(plain_types, plain_values)),
        }


MARKET_CREATED = EventSpec(
    "MarketCreated",
    (
        ("marketId", "uint256", True),
        ("creator", "address", True),
        ("question", "string", False),
        ("endTime", "uint64", False),
    ),
)
BET_PLACED = EventSpec(
    "BetPlaced",
    (
        ("marketId", "uint256", True),
        ("user", "address", True),
        ("forYes", "bool", False),
        ("amount", "uint256", False),
    ),
)
MARKET_RESOLVED = EventSpec(
    "MarketResolved",
    (
        ("marketId", "uint256", True),
        ("winningSide", "uint8", False),
        ("feeAmount", "uint256", False),
    ),
)
CLAIMED = EventSpec(
    "Claimed",
    (
        ("marketId", "uint256", True),
        ("user", "address", True),
        ("payout", "uint256", False),
    ),
)


def _build_market_created(args: Mapping[str, Any]) -> MarketCreated:
    return MarketCreated(
        market_id=int(args["marketId"]),
        creator=normalize_address(args["creator"]),
        question=args["question"],
        end_time=int(args["endTime"]),
    )


def _build_bet_placed(args: Mapping[str, Any]) -> BetPlaced:
    return BetPlaced(
        market_id=int(args["marketId"]),
        user=normalize_address(args["user"]),
        for_yes=bool(args["forYes"]),
        amount=int(args["amount"]),
    )


def _build_market_resolved(args: Mapping[str, Any]) -> MarketResolved:
    return MarketResolved(
        market_id=int(args["marketId"]),
        winning_side=WinningSide(int(args["winningSide"])),
        fee_amount=int(args["feeAmount"]),
    )


def _build_claimed(args: Mapping[str, Any]) -> Claimed:
    return Claimed(
        market_id=int(args["marketId"]),
        user=normalize_address(args["user"]),
        payout=int(args["payout"]),
    )


_EVENT_DECODERS = {
    MARKET_CREATED.topic: (MARKET_CREATED, _build_market_created),
    BET_PLACED.topic: (BET_PLACED, _build_bet_placed),
    MARKET_RESOLVED.topic: (MARKET_RESOLVED, _build_market_resolved),
    CLAIMED.topic: (CLAIMED, _build_claimed),
}


def decode_log(log: Mapping[str, Any], *, contract_address: str | None = None) -> ArenaEvent | None:
    """Decode one receipt log, returning None for logs this contract did not emit."""

    if contract_address and normalize_address(log.get("address")) != normalize_address(contract_address):
        return None
    try:
        topics = [to_bytes(topic) for topic in log.get("topics") or []]
    except (TypeError, ValueError):
        return None
    if not topics:
        return None
    entry = _EVENT_DECODERS.get(topics[0])
    if entry is None:
        return None
    spec, builder = entry
    try:
        return builder(spec.decode(topics, to_bytes(log.get("data"))))
    except (DecodingError, KeyError, TypeError, ValueError) as exc:
        logger.debug("Skipping undecodable {} log: {}", spec.name, exc)
        return None


def decode_receipt_events(
    receipt: Mapping[str, Any], *, contract_address: str | None = None
) -> list[ArenaEvent]:
    events: list[ArenaEvent] = []
    for log in receipt.get("logs") or []:
        event = decode_log(log, contract_address=contract_address)
        if event is not None:
            events.append(event)
    return events


__all__ = [
    "ArenaContract",
    "ArenaEvent",
    "BetPlaced",
    "Claimed",
    "ContractCall",
    "ContractFunction",
    "EventSpec",
    "MarketCreated",
    "MarketResolved",
    "BET_PLACED",
    "CLAIMED",
    "MARKET_CREATED",
    "MARKET_RESOLVED",
    "decode_log",
    "decode_receipt_events",
    "decode_revert_reason",
    "normalize_address",
    "parse_imbalance",
    "parse_market",
    "parse_user_stakes",
    "to_bytes",
    "to_hex",
]
