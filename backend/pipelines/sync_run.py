"""Refresh like counts of active markets and repair truncated cast hashes."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.models import MarketStatus
from app.repositories import MarketIndexRepository
from integrations.neynar import NeynarError
from integrations.normalize import canonical_cast_url, needs_healing
from integrations.service import session_scope

from .context import PipelineContext


@dataclass(slots=True, frozen=True)
class ActiveMarket:
    market_id: int
    cast_hash: str
    cast_url: str | None
    author_username: str


@dataclass(slots=True)
class SyncSummary:
    total_active: int = 0
    healed: int = 0
    synced: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_active": self.total_active,
            "healed": self.healed,
            "synced": self.synced,
            "errors": self.errors,
        }


class SyncPipeline:
    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.settings = context.settings

    def run(self, *, limit: int | None = None) -> SyncSummary:
        summary = SyncSummary()
        with session_scope(self.context.session_factory) as session:
            rows = MarketIndexRepository(session).list_by_status(MarketStatus.ACTIVE.value)
            active = [
                ActiveMarket(
                    market_id=row.market_id,
                    cast_hash=row.cast_hash,
                    cast_url=row.cast_url,
                    author_username=row.author_username,
                )
                for row in rows
            ]
        if limit is not None:
            active = active[:limit]
        summary.total_active = len(active)

        min_length = self.settings.sync_short_hash_length
        to_heal: list[ActiveMarket] = []
        to_batch: list[ActiveMarket] = []
        for market in active:
            if needs_healing(market.cast_hash, min_length=min_length):
                to_heal.append(market)
            else:
                to_batch.append(market)
        logger.info(
            "Starting sync: active={}, heal={}, batch={}", len(active), len(to_heal), len(to_batch)
        )

        updates: dict[int, dict[str, Any]] = {}
        for market in to_heal:
            update = self._heal(market)
            if update is None:
                summary.errors += 1
                continue
            updates[market.market_id] = update
            summary.healed += 1

        for chunk in _chunked(to_batch, self.settings.sync_batch_size):
            try:
                casts = self.context.neynar.fetch_casts([market.cast_hash for market in chunk])
            except NeynarError as exc:
                summary.errors += 1
                logger.error("Bulk cast lookup failed for {} markets: {}", len(chunk), exc)
                continue
            by_hash = {cast.hash.lower(): cast for cast in casts if cast.hash}
            for market in chunk:
                cast = by_hash.get(market.cast_hash.lower())
                if cast is None:
                    continue
                updates[market.market_id] = {
                    "market_id": market.market_id,
                    "cast_hash": market.cast_hash,
                    "likes_count": cast.likes_count,
                }
                summary.synced += 1

        if updates:
            try:
                with session_scope(self.context.session_factory) as session:
                    MarketIndexRepository(session).bulk_update(updates.values())
            except SQLAlchemyError as exc:
                summary.errors += 1
                logger.error("Writing {} refreshed markets failed: {}", len(updates), exc)

        logger.info(
            "Sync finished: active={}, healed={}, synced={}, errors={}",
            summary.total_active,
            summary.healed,
            summary.synced,
            summary.errors,
        )
        return summary

    def _heal(self, market: ActiveMarket) -> dict[str, Any] | None:
        """Resolve a short or URL identifier to the full hash."""

        if market.author_username == "unknown" and market.cast_url:
            url = market.cast_url
        else:
            url = canonical_cast_url(market.author_username, market.cast_hash or market.cast_url or "")
        try:
            cast = self.context.neynar.fetch_cast(url, kind="url")
        except NeynarError as exc:
            logger.warning("Could not heal market #{} ({}): {}", market.market_id, url, exc)
            return None
        logger.info("Healed market #{}: {} -> {}", market.market_id, market.cast_hash, cast.hash)
        return {
            "market_id": market.market_id,
            "cast_hash": cast.hash,
            "likes_count": cast.likes_count,
        }


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Refresh like counts for active markets in the cache",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of markets to sync")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: SyncSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Sync summary written to {}", path)


def main() -> SyncSummary:
    args = _parse_args()
    context = PipelineContext()
    try:
        summary = SyncPipeline(context).run(limit=args.limit)
    finally:
        context.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
