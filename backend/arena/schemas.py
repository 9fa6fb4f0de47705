from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _wei_to_str(value: Any) -> str:
    if value is None:
        return "0"
    return str(int(value))


class UserPosition(BaseModel):
    yes_stake_wei: str = "0"
    no_stake_wei: str = "0"
    claimable_wei: str = "0"
    net_wei: str = "0"
    has_claimed: bool = False

    @field_validator("yes_stake_wei", "no_stake_wei", "claimable_wei", "net_wei", mode="before")
    @classmethod
    def _coerce_wei(cls, value: Any) -> str:
        return _wei_to_str(value)


class MarketBase(BaseModel):
    market_id: int
    question: str
    creator: str
    contract_address: str
    chain_id: int
    end_time: datetime
    status: str
    resolved: bool
    winning_side: int | None = None
    total_yes_wei: str
    total_no_wei: str
    total_stake_wei: str
    fee_amount_wei: str
    distributable_pool_wei: str
    imbalance_bps: int = 0
    warning: bool = False
    locked: bool = False
    provisional: bool = False
    last_synced_at: datetime

    @field_validator(
        "total_yes_wei",
        "total_no_wei",
        "total_stake_wei",
        "fee_amount_wei",
        "distributable_pool_wei",
        mode="before",
    )
    @classmethod
    def _coerce_wei(cls, value: Any) -> str:
        return _wei_to_str(value)


class Market(MarketBase):
    is_void: bool = False
    participants: int = 0
    bet_count: int = 0
    user_position: UserPosition | None = None

    model_config = {"from_attributes": True}


class MarketList(BaseModel):
    total: int
    items: list[Market]


class Claimable(BaseModel):
    market_id: int
    user: str
    claimable_wei: str
    has_claimed: bool = False

    @field_validator("claimable_wei", mode="before")
    @classmethod
    def _coerce_wei(cls, value: Any) -> str:
        return _wei_to_str(value)


class RewardGrantRequest(BaseModel):
    wallet_address: str = Field(default="", description="Wallet that sent the transaction")
    amount: int = Field(default=0, description="Points to credit")
    category: str = Field(default="", description="Reward category, e.g. PREDICTION_MARKET_BET")
    tx_hash: str = Field(default="", description="Transaction proving the action")
    chain_id: int | None = Field(default=None, description="Chain the transaction was sent on")
    source: str | None = Field(default=None, description="web | farcaster | base_app")


class RewardGrantResponse(BaseModel):
    success: bool = True
    new_total_points: int
    granted: bool
