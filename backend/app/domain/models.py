"""Typed domain representations shared by the integrations, jobs and API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any


class Outcome(IntEnum):
    UNRESOLVED = 0
    MOON = 1
    DOOM = 2
    CANCELLED = 3

    @property
    def label(self) -> str:
        return {
            Outcome.UNRESOLVED: "Unresolved",
            Outcome.MOON: "MOON",
            Outcome.DOOM: "DOOM",
            Outcome.CANCELLED: "Cancelled",
        }[self]


@dataclass(slots=True, frozen=True)
class LedgerMarket:
    """A market struct as stored by the contract."""

    market_id: int
    cast_url: str
    threshold: int
    deadline: int
    total_moon_bets: int
    total_doom_bets: int
    outcome: Outcome
    resolved: bool
    creator: str

    @property
    def deadline_at(self) -> datetime:
        return datetime.fromtimestamp(self.deadline, tz=timezone.utc)

    def is_open(self, now: datetime) -> bool:
        return not self.resolved and self.deadline_at > now


@dataclass(slots=True, frozen=True)
class UserBet:
    moon_amount: int
    doom_amount: int
    claimed: bool


@dataclass(slots=True, frozen=True)
class MarketCreatedEvent:
    market_id: int
    cast_url: str
    threshold: int
    deadline: int
    creator: str


@dataclass(slots=True)
class CastMetadata:
    """Cast fields the cache denormalizes from Neynar."""

    hash: str
    author_username: str
    author_pfp_url: str | None
    author_fid: int | None
    text: str
    likes_count: int
    raw_data: dict[str, Any] | None = None


@dataclass(slots=True)
class MarketIndexInput:
    """Clean cache row ready for persistence."""

    market_id: int
    cast_hash: str
    cast_url: str | None
    author_username: str
    author_pfp_url: str | None
    cast_text: str
    threshold: int
    deadline: datetime | None
    status: str
    outcome: int
    resolved: bool
    total_moon_bets: int = 0
    total_doom_bets: int = 0
    creator: str | None = None
    likes_count: int | None = None


@dataclass(slots=True)
class EngagementReading:
    """Like counts measured for one cast during a resolver sweep."""

    likes: int
    power_likes: int | None = None
    pages_read: int = 0
    truncated: bool = False
    cast_found: bool = True
