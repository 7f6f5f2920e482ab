"""Repository abstractions for database interactions."""

from .engagement_repository import SnapshotRepository, UserScoreRepository
from .market_repository import MarketIndexRepository

__all__ = [
    "MarketIndexRepository",
    "SnapshotRepository",
    "UserScoreRepository",
]
