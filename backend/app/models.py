from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class MarketStatus(str, Enum):
    ACTIVE = "active"
    BASED = "based"
    ERASED = "erased"
    CANCELLED = "cancelled"
    ADMIN_CANCELLED = "admin_cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketIndex(Base):
    __tablename__ = "market_index"

    market_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    cast_hash: Mapped[str] = mapped_column(String, nullable=False, index=True)
    cast_url: Mapped[str | None] = mapped_column(String, nullable=True)
    author_username: Mapped[str] = mapped_column(String, nullable=False, default="unknown", index=True)
    author_pfp_url: Mapped[str | None] = mapped_column(String, nullable=True)
    cast_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=MarketStatus.ACTIVE.value, index=True
    )
    outcome: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    likes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    power_likes_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_moon_bets: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_doom_bets: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    creator: Mapped[str | None] = mapped_column(String(42), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CastSnapshot(Base):
    """Proof that the cast behind a market existed at capture time."""

    __tablename__ = "cast_snapshots"

    market_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    cast_hash: Mapped[str] = mapped_column(String, nullable=False)
    likes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cast_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserScore(Base):
    __tablename__ = "user_scores"

    fid: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    score: Mapped[float] = mapped_column(Numeric(6, 4), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
