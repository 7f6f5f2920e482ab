"""Oracle job that settles markets from measured cast engagement."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.domain import EngagementReading, LedgerMarket, Outcome
from app.repositories import MarketIndexRepository, SnapshotRepository, UserScoreRepository
from integrations.ledger import LedgerError
from integrations.neynar import CastNotFoundError, NeynarError
from integrations.normalize import extract_cast_hash, needs_healing, status_for_market
from integrations.service import session_scope

from .context import PipelineContext


@dataclass(slots=True)
class MarketDecision:
    market_id: int
    action: str
    outcome: str | None = None
    reason: str | None = None
    count: int | None = None
    threshold: int | None = None
    tx_hash: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "action": self.action,
            "outcome": self.outcome,
            "reason": self.reason,
            "count": self.count,
            "threshold": self.threshold,
            "tx_hash": self.tx_hash,
            "error": self.error,
        }


@dataclass(slots=True)
class ResolutionSummary:
    checked: int = 0
    resolved: int = 0
    pending: int = 0
    skipped: int = 0
    errors: int = 0
    pruned: int = 0
    dry_run: bool = False
    results: list[MarketDecision] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "resolved": self.resolved,
            "pending": self.pending,
            "skipped": self.skipped,
            "errors": self.errors,
            "pruned": self.pruned,
            "dry_run": self.dry_run,
            "results": [result.to_dict() for result in self.results],
        }


def decide_outcome(
    *,
    count: int,
    threshold: int,
    deadline: datetime,
    now: datetime,
    has_snapshot: bool,
    cast_found: bool = True,
) -> tuple[Outcome | None, str]:
    """Apply the settlement rule; ``None`` means the market stays open.

    A live cast never settles early on a low count; only a cast that was
    snapshotted before and now returns not-found does.
    """

    if count >= threshold:
        return Outcome.MOON, "threshold_reached"
    if not cast_found and has_snapshot:
        return Outcome.DOOM, "cast_deleted"
    if now > deadline:
        return Outcome.DOOM, "deadline_passed"
    return None, "pending"


class ResolutionPipeline:
    """Measure engagement for open markets and submit settlements."""

    def __init__(self, context: PipelineContext, *, dry_run: bool = False) -> None:
        self.context = context
        self.settings = context.settings
        self.dry_run = dry_run

    def run(self, *, limit: int | None = None) -> ResolutionSummary:
        summary = ResolutionSummary(dry_run=self.dry_run)
        ledger = self.context.ledger
        total = ledger.market_count()
        last_id = total if limit is None else min(total, limit)
        logger.info(
            "Starting resolution sweep: total_markets={}, limit={}, mode={}, dry_run={}",
            total,
            limit,
            self.settings.resolver_count_mode,
            self.dry_run,
        )

        for market_id in range(1, last_id + 1):
            try:
                market = ledger.get_market(market_id)
            except LedgerError as exc:
                summary.errors += 1
                summary.results.append(
                    MarketDecision(market_id=market_id, action="error", error=str(exc))
                )
                logger.error("Market #{} could not be read: {}", market_id, exc)
                continue
            if market is None or market.resolved:
                summary.skipped += 1
                continue

            summary.checked += 1
            try:
                decision = self._process_market(market)
            except (LedgerError, NeynarError, SQLAlchemyError) as exc:
                decision = MarketDecision(
                    market_id=market_id,
                    action="error",
                    threshold=market.threshold,
                    error=str(exc),
                )
                logger.error("Market #{} left unresolved: {}", market_id, exc)

            summary.results.append(decision)
            if decision.action == "resolved":
                summary.resolved += 1
            elif decision.action == "error":
                summary.errors += 1
            elif decision.action == "skipped":
                summary.skipped += 1
            else:
                summary.pending += 1
            self.context.sleep(self.settings.resolver_delay_seconds)

        if not self.dry_run:
            summary.pruned = self._prune_expired(summary)

        logger.info(
            "Resolution sweep finished: checked={}, resolved={}, pending={}, skipped={}, errors={}, pruned={}",
            summary.checked,
            summary.resolved,
            summary.pending,
            summary.skipped,
            summary.errors,
            summary.pruned,
        )
        return summary

    def _process_market(self, market: LedgerMarket) -> MarketDecision:
        market_id = market.market_id
        with session_scope(self.context.session_factory) as session:
            row = MarketIndexRepository(session).get_market(market_id)
            cached_hash = row.cast_hash if row is not None else None
            has_snapshot = SnapshotRepository(session).has_snapshot(market_id)

        reading = self.measure_engagement(market, cached_hash)
        if self.settings.resolver_count_mode == "power_likes" and reading.power_likes is not None:
            count = reading.power_likes
        else:
            count = reading.likes

        now = self.context.now()
        outcome, reason = decide_outcome(
            count=count,
            threshold=market.threshold,
            deadline=market.deadline_at,
            now=now,
            has_snapshot=has_snapshot,
            cast_found=reading.cast_found,
        )
        logger.info(
            "Market #{}: count={}/{} truncated={} deadline={} -> {} ({})",
            market_id,
            count,
            market.threshold,
            reading.truncated,
            market.deadline_at.isoformat(),
            outcome.label if outcome else "pending",
            reason,
        )
        decision = MarketDecision(
            market_id=market_id,
            action="pending",
            outcome=outcome.label if outcome else None,
            reason=reason,
            count=count,
            threshold=market.threshold,
        )

        if outcome is None:
            if not self.dry_run and row is not None:
                self._record_counts(market_id, reading)
            return decision
        if self.dry_run:
            decision.action = "would_resolve"
            return decision

        fresh = self.context.ledger.get_market(market_id)
        if fresh is None or fresh.resolved:
            logger.info("Market #{} was resolved by another run; skipping", market_id)
            decision.action = "skipped"
            decision.reason = "resolved_concurrently"
            return decision

        decision.tx_hash = self.context.ledger.resolve_market(market_id, outcome)
        decision.action = "resolved"
        logger.info("Market #{} resolved {} in {}", market_id, outcome.label, decision.tx_hash)

        try:
            with session_scope(self.context.session_factory) as session:
                MarketIndexRepository(session).mark_resolved(
                    market_id,
                    outcome=outcome,
                    status=status_for_market(True, outcome),
                    likes_count=reading.likes,
                    power_likes_count=reading.power_likes,
                )
        except SQLAlchemyError as exc:
            # Settled on chain; the next index run repairs the cache.
            logger.error("Cache update for resolved market #{} failed: {}", market_id, exc)
        return decision

    def measure_engagement(
        self, market: LedgerMarket, cached_hash: str | None
    ) -> EngagementReading:
        """Count likes and power likes; a missing cast reads as zero."""

        cast_hash = self._full_cast_hash(market, cached_hash)
        if cast_hash is None:
            return EngagementReading(likes=0, power_likes=0, cast_found=False)

        try:
            likes = self.context.neynar.collect_likes(
                cast_hash,
                page_limit=self.settings.resolver_reaction_page_limit,
                page_size=self.settings.resolver_reaction_page_size,
            )
        except CastNotFoundError:
            return EngagementReading(likes=0, power_likes=0, cast_found=False)

        if likes.truncated:
            logger.warning(
                "Market #{}: like listing truncated after {} pages",
                market.market_id,
                likes.pages_read,
            )
        power_likes = None
        if self.settings.resolver_count_mode == "power_likes":
            power_likes = self._count_power_likes(likes.liker_fids)
        return EngagementReading(
            likes=likes.count,
            power_likes=power_likes,
            pages_read=likes.pages_read,
            truncated=likes.truncated,
        )

    def _full_cast_hash(self, market: LedgerMarket, cached_hash: str | None) -> str | None:
        min_length = self.settings.sync_short_hash_length
        if cached_hash and not needs_healing(cached_hash, min_length=min_length):
            return cached_hash
        url_hash = extract_cast_hash(market.cast_url)
        if url_hash and not needs_healing(url_hash, min_length=min_length):
            return url_hash
        try:
            return self.context.neynar.fetch_cast(market.cast_url, kind="url").hash or None
        except CastNotFoundError:
            logger.info("Market #{}: cast {} not found", market.market_id, market.cast_url)
            return None

    def _count_power_likes(self, liker_fids: Sequence[int]) -> int:
        if not liker_fids:
            return 0
        max_age = timedelta(hours=self.settings.user_score_ttl_hours)
        with session_scope(self.context.session_factory) as session:
            scores = UserScoreRepository(session).fresh_scores(
                liker_fids, max_age=max_age, now=self.context.now()
            )

        missing = sorted(set(liker_fids) - set(scores))
        if missing:
            fetched = self.context.neynar.fetch_user_scores(missing)
            if fetched and not self.dry_run:
                with session_scope(self.context.session_factory) as session:
                    UserScoreRepository(session).upsert_scores(fetched)
            scores.update(fetched)

        threshold = self.settings.power_user_score_threshold
        return sum(1 for fid in liker_fids if scores.get(fid, 0.0) > threshold)

    def _record_counts(self, market_id: int, reading: EngagementReading) -> None:
        try:
            with session_scope(self.context.session_factory) as session:
                update = {"market_id": market_id, "likes_count": reading.likes}
                if reading.power_likes is not None:
                    update["power_likes_count"] = reading.power_likes
                MarketIndexRepository(session).bulk_update([update])
        except SQLAlchemyError as exc:
            logger.warning("Could not store counts for market #{}: {}", market_id, exc)

    def _prune_expired(self, summary: ResolutionSummary) -> int:
        days = self.settings.cache_retention_days
        if days <= 0:
            return 0
        cutoff = self.context.now() - timedelta(days=days)
        try:
            with session_scope(self.context.session_factory) as session:
                pruned = MarketIndexRepository(session).prune_resolved_before(cutoff)
        except SQLAlchemyError as exc:
            summary.errors += 1
            logger.error("Pruning resolved markets failed: {}", exc)
            return 0
        if pruned:
            logger.info("Pruned {} resolved markets older than {} days", len(pruned), days)
        return len(pruned)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Measure cast engagement and settle markets on chain",
    )
    parser.add_argument("--limit", type=int, default=None, help="Only check market ids up to N")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report decisions without submitting transactions or writing the cache",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ResolutionSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Resolution summary written to {}", path)


def main() -> ResolutionSummary:
    args = _parse_args()
    context = PipelineContext()
    try:
        summary = ResolutionPipeline(context, dry_run=args.dry_run).run(limit=args.limit)
    finally:
        context.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
