"""On-demand reconciliation of the cache against the ledger."""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.domain import CastMetadata, LedgerMarket, Outcome
from app.repositories import MarketIndexRepository, SnapshotRepository
from integrations.ledger import LedgerClient
from integrations.neynar import NeynarClient, NeynarError
from integrations.normalize import build_index_input, status_for_market
from integrations.service import session_scope


class MarketNotFoundError(LookupError):
    pass


class SyncRejected(ValueError):
    """Raised when a transaction cannot be mirrored into the cache."""


class SettlementSyncService:
    def __init__(
        self,
        *,
        ledger: LedgerClient,
        neynar: NeynarClient,
        session_factory: sessionmaker[Session],
    ) -> None:
        self._ledger = ledger
        self._neynar = neynar
        self._session_factory = session_factory

    def sync_resolution(self, market_id: int) -> dict[str, Any]:
        """Copy an on-chain settlement into the cache without waiting for the indexer."""

        market = self._ledger.get_market(market_id)
        if market is None:
            raise MarketNotFoundError(f"Market {market_id} does not exist on chain")
        if not market.resolved:
            return {"message": "Market not resolved on chain yet."}

        status = status_for_market(True, market.outcome)
        with session_scope(self._session_factory) as session:
            repo = MarketIndexRepository(session)
            record = repo.mark_resolved(market_id, outcome=market.outcome, status=status)
            if record is None:
                repo.upsert_market(build_index_input(market, None))

        logger.info("Synced resolution of market #{}: {}", market_id, market.outcome.label)
        return {"success": True, "outcome": int(market.outcome), "status": status}

    def sync_created_market(self, tx_hash: str) -> dict[str, Any]:
        receipt = self._ledger.wait_for_receipt(tx_hash)
        if receipt["status"] != 1:
            raise SyncRejected("Transaction failed")
        event = self._ledger.parse_market_created(receipt)
        if event is None:
            raise SyncRejected("No MarketCreated event in transaction")

        market = LedgerMarket(
            market_id=event.market_id,
            cast_url=event.cast_url,
            threshold=event.threshold,
            deadline=event.deadline,
            total_moon_bets=0,
            total_doom_bets=0,
            outcome=Outcome.UNRESOLVED,
            resolved=False,
            creator=event.creator,
        )
        metadata = self._lookup_cast(event.cast_url)
        with session_scope(self._session_factory) as session:
            MarketIndexRepository(session).upsert_market(build_index_input(market, metadata))
            if metadata is not None:
                SnapshotRepository(session).record_snapshot(market.market_id, metadata)

        logger.info("Synced created market #{} from {}", market.market_id, tx_hash)
        return {"success": True, "marketId": market.market_id}

    def _lookup_cast(self, cast_url: str) -> CastMetadata | None:
        try:
            return self._neynar.fetch_cast(cast_url)
        except NeynarError as exc:
            logger.warning("Cast metadata unavailable for {}: {}", cast_url, exc)
            return None
