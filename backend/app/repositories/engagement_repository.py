"""Cast snapshot and user score persistence."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain import CastMetadata
from app.models import CastSnapshot, UserScore, utcnow

from .market_repository import as_utc


class SnapshotRepository:
    """Remember that a cast was observed so later 404s read as deletions."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def record_snapshot(self, market_id: int, metadata: CastMetadata) -> CastSnapshot:
        snapshot = self._session.get(CastSnapshot, market_id)
        if snapshot is None:
            snapshot = CastSnapshot(market_id=market_id)
            self._session.add(snapshot)
        snapshot.cast_hash = metadata.hash
        snapshot.likes_count = metadata.likes_count
        snapshot.cast_text = metadata.text
        snapshot.captured_at = utcnow()
        return snapshot

    def has_snapshot(self, market_id: int) -> bool:
        return self._session.get(CastSnapshot, market_id) is not None


class UserScoreRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def fresh_scores(
        self, fids: Iterable[int], *, max_age: timedelta, now: datetime | None = None
    ) -> dict[int, float]:
        wanted = sorted(set(int(fid) for fid in fids))
        if not wanted:
            return {}
        cutoff = (now or utcnow()) - max_age
        rows = self._session.execute(
            select(UserScore).where(UserScore.fid.in_(wanted))
        ).scalars()
        return {
            row.fid: float(row.score)
            for row in rows
            if row.last_updated is not None and as_utc(row.last_updated) >= cutoff
        }

    def upsert_scores(self, scores: Mapping[int, float]) -> int:
        now = utcnow()
        for fid, score in scores.items():
            record = self._session.get(UserScore, int(fid))
            if record is None:
                record = UserScore(fid=int(fid))
                self._session.add(record)
            record.score = Decimal(str(round(float(score), 4)))
            record.last_updated = now
        return len(scores)


__all__ = ["SnapshotRepository", "UserScoreRepository"]
