"""Mirror every on-chain market into the market index cache."""

from __future__ import annotations

import argparse
import json
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.domain import CastMetadata, LedgerMarket
from app.models import MarketIndex
from app.repositories import MarketIndexRepository, SnapshotRepository
from integrations.ledger import LedgerError
from integrations.neynar import NeynarError
from integrations.normalize import build_index_input, needs_healing
from integrations.service import session_scope

from .context import PipelineContext


@dataclass(slots=True)
class IndexSummary:
    total_markets: int = 0
    indexed: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_markets": self.total_markets,
            "indexed": self.indexed,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "failures": self.failures,
        }


class IndexPipeline:
    """Walk market ids ``1..N`` and upsert one cache row per market."""

    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.settings = context.settings

    def run(self, *, limit: int | None = None) -> IndexSummary:
        started = time.perf_counter()
        summary = IndexSummary()
        ledger = self.context.ledger

        summary.total_markets = ledger.market_count()
        last_id = summary.total_markets
        if limit is not None:
            last_id = min(last_id, limit)

        retention_cutoff = None
        if self.settings.cache_retention_days > 0:
            retention_cutoff = self.context.now() - timedelta(days=self.settings.cache_retention_days)

        logger.info("Starting index run: total_markets={}, limit={}", summary.total_markets, limit)
        for market_id in range(1, last_id + 1):
            try:
                market = ledger.get_market(market_id)
                if market is None:
                    summary.skipped += 1
                elif (
                    retention_cutoff is not None
                    and market.resolved
                    and market.deadline_at < retention_cutoff
                ):
                    summary.skipped += 1
                elif self._index_market(market):
                    summary.indexed += 1
                else:
                    summary.unchanged += 1
            except (LedgerError, SQLAlchemyError) as exc:
                summary.errors += 1
                summary.failures.append({"market_id": market_id, "error": str(exc)})
                logger.error("Failed to index market #{}: {}", market_id, exc)
            self.context.sleep(self.settings.indexer_delay_seconds)

        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Index run finished: indexed={}, unchanged={}, skipped={}, errors={}, duration_ms={}",
            summary.indexed,
            summary.unchanged,
            summary.skipped,
            summary.errors,
            summary.duration_ms,
        )
        return summary

    def _index_market(self, market: LedgerMarket) -> bool:
        with session_scope(self.context.session_factory) as session:
            repo = MarketIndexRepository(session)
            existing = repo.get_market(market.market_id)
            metadata = self._fetch_metadata(market, existing)
            if metadata is None and existing is not None:
                metadata = _metadata_from_row(existing)
            elif metadata is not None:
                SnapshotRepository(session).record_snapshot(market.market_id, metadata)
            _, changed = repo.upsert_market(build_index_input(market, metadata))
        return changed

    def _fetch_metadata(
        self, market: LedgerMarket, existing: MarketIndex | None
    ) -> CastMetadata | None:
        min_length = self.settings.sync_short_hash_length
        if existing is not None and not needs_healing(existing.cast_hash, min_length=min_length):
            identifier, kind = existing.cast_hash, "hash"
        else:
            identifier, kind = market.cast_url, "url"
        try:
            return self.context.neynar.fetch_cast(identifier, kind=kind)
        except NeynarError as exc:
            logger.warning("Metadata unavailable for market #{}: {}", market.market_id, exc)
            return None


def _metadata_from_row(row: MarketIndex) -> CastMetadata:
    return CastMetadata(
        hash=row.cast_hash,
        author_username=row.author_username,
        author_pfp_url=row.author_pfp_url,
        author_fid=None,
        text=row.cast_text or "",
        likes_count=row.likes_count or 0,
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Mirror on-chain markets into the market index cache",
    )
    parser.add_argument("--limit", type=int, default=None, help="Only index market ids up to N")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: IndexSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Index summary written to {}", path)


def main() -> IndexSummary:
    args = _parse_args()
    context = PipelineContext()
    try:
        summary = IndexPipeline(context).run(limit=args.limit)
    finally:
        context.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
