"""Higher-level conveniences for reading the market cache."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy.orm import Session

from app.models import MarketStatus
from app.repositories import MarketIndexRepository
from app.schemas import MarketIndexEntry

HIDDEN_STATUSES = (MarketStatus.ADMIN_CANCELLED.value,)


@dataclass(slots=True)
class MarketQuery:
    status: str | None = None
    author: str | None = None
    sort: str = "deadline"
    order: str = "asc"
    limit: int = 50
    offset: int = 0

    def to_repository_kwargs(self) -> dict[str, Any]:
        """Serialize the query so repository functions receive consistent kwargs."""

        # Soft-cancelled markets only show up when asked for explicitly.
        excluded = () if self.status in HIDDEN_STATUSES else HIDDEN_STATUSES
        return {
            "status": self.status,
            "exclude_statuses": excluded,
            "author": self.author,
            "sort": self.sort,
            "order": self.order,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(slots=True)
class MarketQueryResult:
    total: int
    markets: Sequence[MarketIndexEntry]


class MarketService:
    """Read-only facade over the market index used by the API."""

    def __init__(self, session: Session):
        self._session = session
        self._market_repo = MarketIndexRepository(session)

    def list_markets(self, query: MarketQuery) -> MarketQueryResult:
        raw_markets, total = self._market_repo.list_markets(**query.to_repository_kwargs())
        markets = [MarketIndexEntry.model_validate(record) for record in raw_markets]
        return MarketQueryResult(total=total, markets=markets)

    def get_market(self, market_id: int) -> MarketIndexEntry | None:
        market = self._market_repo.get_market(market_id)
        if not market:
            return None
        return MarketIndexEntry.model_validate(market)
