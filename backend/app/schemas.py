from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

_CAMEL = {"populate_by_name": True}


class MarketIndexEntry(BaseModel):
    market_id: int
    cast_hash: str
    cast_url: str | None = None
    author_username: str
    author_pfp_url: str | None = None
    cast_text: str | None = None
    threshold: int
    deadline: datetime | None = None
    status: str
    outcome: int
    resolved: bool
    likes_count: int = 0
    power_likes_count: int | None = None
    total_moon_bets: int = 0
    total_doom_bets: int = 0
    creator: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("likes_count", "total_moon_bets", "total_doom_bets", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        if value is None:
            return 0
        return int(value)


class MarketList(BaseModel):
    total: int
    items: list[MarketIndexEntry]


class UserBetView(BaseModel):
    market_id: int
    address: str
    moon_amount: int
    doom_amount: int
    claimed: bool


class LiveScore(BaseModel):
    likes: int
    status: str | None = None
    timestamp: int | None = None


# ----------------------------------------------------------------------
# Wallet and frame transactions


class BetTxRequest(BaseModel):
    market_id: int = Field(alias="marketId", ge=1)
    is_moon: bool = Field(alias="isMoon")
    amount: str | None = Field(
        default=None,
        description="Human USDC amount; falls back to the configured default bet",
    )

    model_config = _CAMEL


class CreateTxRequest(BaseModel):
    cast_url: str = Field(alias="castUrl", min_length=1)
    threshold: int = Field(ge=1)
    duration_hours: int = Field(default=24, alias="durationHours", ge=1)

    model_config = _CAMEL


class ClaimTxRequest(BaseModel):
    market_id: int = Field(alias="marketId", ge=1)

    model_config = _CAMEL


class ContractCall(BaseModel):
    to: str
    data: str
    value: str = "0"
    function_name: str = Field(serialization_alias="functionName")


class TxCallList(BaseModel):
    chain_id: int = Field(serialization_alias="chainId")
    calls: list[ContractCall]


class FrameTxParams(BaseModel):
    abi: list[dict[str, Any]]
    to: str
    data: str
    value: str = "0"


class FrameTransaction(BaseModel):
    chain_id: str = Field(serialization_alias="chainId")
    method: str = "eth_sendTransaction"
    params: FrameTxParams


# ----------------------------------------------------------------------
# Reconciliation and admin


class SyncMarketRequest(BaseModel):
    tx_hash: str = Field(alias="txHash", pattern=r"^0x[0-9a-fA-F]{64}$")

    model_config = _CAMEL


class SyncResolutionRequest(BaseModel):
    market_id: int = Field(alias="marketId", ge=1)

    model_config = _CAMEL


class AdminCancelRequest(BaseModel):
    market_id: int = Field(alias="marketId", ge=1)
    address: str | None = None

    model_config = _CAMEL
