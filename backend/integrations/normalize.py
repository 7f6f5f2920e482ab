from __future__ import annotations

import re
from typing import Any

from app.domain import CastMetadata, LedgerMarket, MarketIndexInput, Outcome
from app.models import MarketStatus

WARPCAST_BASE_URL = "https://warpcast.com"
SHORT_HASH_LENGTH = 10

_URL_HASH_PATTERN = re.compile(r"/(0x[a-fA-F0-9]+)/?$")


def _parse_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(round(float(value)))
        except (TypeError, ValueError):
            return 0


def normalize_cast(raw_cast: dict[str, Any]) -> CastMetadata:
    author = raw_cast.get("author") if isinstance(raw_cast.get("author"), dict) else {}
    reactions = raw_cast.get("reactions") if isinstance(raw_cast.get("reactions"), dict) else {}

    likes = reactions.get("likes_count")
    if likes is None:
        # Older payloads only carry a truncated list of likes.
        likes = len(reactions.get("likes") or [])

    fid = author.get("fid")
    return CastMetadata(
        hash=str(raw_cast.get("hash") or ""),
        author_username=author.get("username") or "unknown",
        author_pfp_url=author.get("pfp_url"),
        author_fid=int(fid) if fid is not None else None,
        text=raw_cast.get("text") or "",
        likes_count=_parse_int(likes),
        raw_data=raw_cast,
    )


def extract_cast_hash(cast_url: str | None) -> str | None:
    """Return the ``0x`` identifier at the end of a cast URL."""

    if not cast_url:
        return None
    match = _URL_HASH_PATTERN.search(cast_url.strip())
    return match.group(1) if match else None


def clean_identifier(identifier: str) -> str:
    """Strip a URL down to its last path segment."""

    if identifier.startswith("http"):
        return identifier.rstrip("/").rsplit("/", 1)[-1]
    return identifier


def needs_healing(identifier: str | None, *, min_length: int) -> bool:
    if not identifier:
        return True
    return len(identifier) < min_length or identifier.startswith("http")


def canonical_cast_url(author_username: str, identifier: str) -> str:
    return f"{WARPCAST_BASE_URL}/{author_username}/{clean_identifier(identifier)}"


def build_cast_url(author_username: str, cast_hash: str) -> str:
    """Warpcast short URL, the form markets are created with."""

    return f"{WARPCAST_BASE_URL}/{author_username}/{cast_hash[:SHORT_HASH_LENGTH]}"


def cast_url_matches(cast_url: str | None, cast_hash: str) -> bool:
    if not cast_url or not cast_hash:
        return False
    url = cast_url.lower()
    full = cast_hash.lower()
    short = full[:SHORT_HASH_LENGTH]
    return full in url or url.rstrip("/").endswith("/" + short)


def status_for_market(resolved: bool, outcome: Outcome | int) -> str:
    if not resolved:
        return MarketStatus.ACTIVE.value
    outcome = Outcome(int(outcome))
    if outcome == Outcome.MOON:
        return MarketStatus.BASED.value
    if outcome == Outcome.CANCELLED:
        return MarketStatus.CANCELLED.value
    return MarketStatus.ERASED.value


def build_index_input(market: LedgerMarket, metadata: CastMetadata | None) -> MarketIndexInput:
    """Combine a ledger struct with best-effort cast metadata into a cache row."""

    fallback_hash = extract_cast_hash(market.cast_url) or market.cast_url
    return MarketIndexInput(
        market_id=market.market_id,
        cast_hash=(metadata.hash if metadata and metadata.hash else fallback_hash),
        cast_url=market.cast_url,
        author_username=metadata.author_username if metadata else "unknown",
        author_pfp_url=metadata.author_pfp_url if metadata else None,
        cast_text=metadata.text if metadata else "",
        threshold=market.threshold,
        deadline=market.deadline_at,
        status=status_for_market(market.resolved, market.outcome),
        outcome=int(market.outcome),
        resolved=market.resolved,
        total_moon_bets=market.total_moon_bets,
        total_doom_bets=market.total_doom_bets,
        creator=market.creator,
        likes_count=metadata.likes_count if metadata else None,
    )
