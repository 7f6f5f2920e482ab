"""Market index data access helpers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import asc, delete, desc, func, or_, select, update
from sqlalchemy.orm import Session

from app.domain import MarketIndexInput, Outcome
from app.models import MarketIndex, MarketStatus, utcnow

_UPSERT_FIELDS = (
    "cast_hash",
    "cast_url",
    "author_username",
    "author_pfp_url",
    "cast_text",
    "threshold",
    "deadline",
    "status",
    "outcome",
    "resolved",
    "total_moon_bets",
    "total_doom_bets",
    "creator",
)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _same(current: Any, incoming: Any) -> bool:
    if isinstance(current, datetime) or isinstance(incoming, datetime):
        return as_utc(current) == as_utc(incoming)
    return current == incoming


class MarketIndexRepository:
    """Encapsulate all market index persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_market(self, market: MarketIndexInput) -> tuple[MarketIndex, bool]:
        """Insert or update the row keyed by ``market_id``.

        Returns the row and whether anything changed; ``updated_at`` only
        moves when a column actually changed so reruns are idempotent.
        """

        existing = self._session.get(MarketIndex, market.market_id)
        is_new = existing is None
        if is_new:
            existing = MarketIndex(market_id=market.market_id, created_at=utcnow())

        incoming: dict[str, Any] = {name: getattr(market, name) for name in _UPSERT_FIELDS}
        if market.likes_count is not None:
            incoming["likes_count"] = market.likes_count
        if (
            not is_new
            and existing.status == MarketStatus.ADMIN_CANCELLED.value
            and not market.resolved
        ):
            incoming["status"] = MarketStatus.ADMIN_CANCELLED.value

        changed = is_new
        for name, value in incoming.items():
            if is_new or not _same(getattr(existing, name), value):
                setattr(existing, name, value)
                changed = True

        if changed:
            existing.updated_at = utcnow()
        if is_new:
            self._session.add(existing)
        return existing, changed

    def mark_resolved(
        self,
        market_id: int,
        *,
        outcome: Outcome,
        status: str,
        likes_count: int | None = None,
        power_likes_count: int | None = None,
    ) -> MarketIndex | None:
        record = self._session.get(MarketIndex, market_id)
        if record is None:
            return None
        record.resolved = True
        record.outcome = int(outcome)
        record.status = status
        if likes_count is not None:
            record.likes_count = likes_count
        if power_likes_count is not None:
            record.power_likes_count = power_likes_count
        record.updated_at = utcnow()
        return record

    def set_status(self, market_id: int, status: str) -> bool:
        record = self._session.get(MarketIndex, market_id)
        if record is None:
            return False
        record.status = status
        record.updated_at = utcnow()
        return True

    def bulk_update(self, updates: Iterable[Mapping[str, Any]]) -> int:
        """Apply per-row column updates keyed by ``market_id`` in one statement."""

        now = utcnow()
        rows = [{**dict(values), "updated_at": now} for values in updates]
        if not rows:
            return 0
        self._session.execute(update(MarketIndex), rows)
        return len(rows)

    def delete_market(self, market_id: int) -> bool:
        result = self._session.execute(
            delete(MarketIndex).where(MarketIndex.market_id == market_id)
        )
        return bool(result.rowcount)

    def prune_resolved_before(self, cutoff: datetime) -> list[int]:
        stale_ids = self._session.execute(
            select(MarketIndex.market_id)
            .where(MarketIndex.resolved.is_(True), MarketIndex.deadline < cutoff)
            .order_by(MarketIndex.market_id)
        ).scalars().all()
        for market_id in stale_ids:
            self.delete_market(market_id)
        return list(stale_ids)

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, market_id: int) -> MarketIndex | None:
        return self._session.get(MarketIndex, market_id)

    def list_by_status(self, status: str) -> list[MarketIndex]:
        query = (
            select(MarketIndex)
            .where(MarketIndex.status == status)
            .order_by(MarketIndex.market_id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def list_markets(
        self,
        *,
        status: str | None = None,
        exclude_statuses: Iterable[str] = (),
        author: str | None = None,
        sort: str = "deadline",
        order: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MarketIndex], int]:
        filters: list[Any] = []
        if status:
            filters.append(MarketIndex.status == status)
        excluded = list(exclude_statuses)
        if excluded:
            filters.append(MarketIndex.status.not_in(excluded))
        if author:
            filters.append(MarketIndex.author_username == author)

        sort_column = {
            "deadline": MarketIndex.deadline,
            "likes_count": MarketIndex.likes_count,
            "created_at": MarketIndex.created_at,
            "market_id": MarketIndex.market_id,
        }.get(sort, MarketIndex.deadline)
        sort_direction = asc if order.lower() != "desc" else desc

        query = (
            select(MarketIndex)
            .where(*filters)
            .order_by(sort_direction(sort_column), MarketIndex.market_id.asc())
            .limit(limit)
            .offset(offset)
        )
        total_query = select(func.count(MarketIndex.market_id)).where(*filters)

        markets = list(self._session.execute(query).scalars().all())
        total = self._session.execute(total_query).scalar_one()
        return markets, total

    def find_by_cast_hash(self, cast_hash: str) -> MarketIndex | None:
        """Match a full hash against stored full hashes, short prefixes or short URLs."""

        if not cast_hash:
            return None
        full = cast_hash.lower()
        short = full[:10]
        query = (
            select(MarketIndex)
            .where(
                or_(
                    func.lower(MarketIndex.cast_hash) == full,
                    func.lower(MarketIndex.cast_hash) == short,
                    func.lower(MarketIndex.cast_url).like(f"%/{short}"),
                )
            )
            .order_by(MarketIndex.market_id.asc())
            .limit(1)
        )
        return self._session.execute(query).scalar_one_or_none()


__all__ = ["MarketIndexRepository", "as_utc"]
