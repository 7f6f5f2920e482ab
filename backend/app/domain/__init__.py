"""Domain models representing ledger and social data."""

from .models import (
    CastMetadata,
    EngagementReading,
    LedgerMarket,
    MarketCreatedEvent,
    MarketIndexInput,
    Outcome,
    UserBet,
)

__all__ = [
    "CastMetadata",
    "EngagementReading",
    "LedgerMarket",
    "MarketCreatedEvent",
    "MarketIndexInput",
    "Outcome",
    "UserBet",
]
