"""Create markets from social mentions delivered by the Neynar webhook."""

from __future__ import annotations

import hashlib
import hmac
import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.domain import CastMetadata, MarketIndexInput, Outcome
from app.models import MarketStatus
from app.repositories import MarketIndexRepository, SnapshotRepository
from integrations.ledger import LedgerClient, receipt_tx_hash
from integrations.neynar import NeynarClient, NeynarError
from integrations.normalize import build_cast_url, cast_url_matches, normalize_cast
from integrations.service import session_scope

CAST_CREATED_EVENT = "cast.created"

_MENTION_TOKEN = re.compile(r"@[\w.-]+")
_DURATION_PATTERN = re.compile(r"(?<!\d)(\d+)\s*h(?:ours?|rs?)?\b", re.IGNORECASE)
_THRESHOLD_PATTERN = re.compile(r"(?<!\d)(\d+)(?!\d)(?!\s*h(?:ours?|rs?)?\b)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class MarketCommand:
    threshold: int
    duration_hours: int


def parse_command(
    text: str | None,
    *,
    handle: str,
    default_threshold: int = 100,
    max_threshold: int = 100_000,
    default_duration_hours: int = 24,
    max_duration_hours: int = 168,
) -> MarketCommand | None:
    """Parse ``@handle [N [likes]] [Nh|N hours]``.

    Returns ``None`` when the handle is not mentioned. Values outside
    their bounds fall back to the defaults.
    """

    if not text:
        return None
    mention = re.compile(rf"@{re.escape(handle)}(?![\w.-])", re.IGNORECASE)
    if not mention.search(text):
        return None

    # Digits inside other mentions (e.g. @user42) are not arguments.
    body = _MENTION_TOKEN.sub(" ", text)

    duration_hours = default_duration_hours
    duration_match = _DURATION_PATTERN.search(body)
    if duration_match:
        parsed = int(duration_match.group(1))
        if 1 <= parsed <= max_duration_hours:
            duration_hours = parsed

    threshold = default_threshold
    threshold_match = _THRESHOLD_PATTERN.search(body)
    if threshold_match:
        parsed = int(threshold_match.group(1))
        if 1 <= parsed <= max_threshold:
            threshold = parsed

    return MarketCommand(threshold=threshold, duration_hours=duration_hours)


def validate_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check the HMAC-SHA512 hex digest Neynar sends with each delivery."""

    if not secret:
        logger.warning("Webhook signature validation skipped: NEYNAR_WEBHOOK_SECRET is not set")
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class WebhookService:
    def __init__(
        self,
        *,
        settings: Settings,
        ledger: LedgerClient,
        neynar: NeynarClient,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime],
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._neynar = neynar
        self._session_factory = session_factory
        self._clock = clock

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        event_type = payload.get("type")
        if event_type and event_type != CAST_CREATED_EVENT:
            logger.info("[Webhook] Ignoring {} event", event_type)
            return {"success": True, "status": "ignored", "reason": "unsupported_event"}

        cast = payload.get("data")
        if not isinstance(cast, dict) or not cast.get("hash"):
            logger.error("[Webhook] Invalid payload structure")
            return {"success": True, "status": "ignored", "reason": "invalid_payload"}

        metadata = normalize_cast(cast)
        author = cast.get("author") if isinstance(cast.get("author"), dict) else {}
        username = author.get("username") or "anon"
        logger.info("[Webhook] Cast {} from @{} (FID {})", metadata.hash, username, author.get("fid"))

        settings = self._settings
        command = parse_command(
            metadata.text,
            handle=settings.webhook_mention_handle,
            default_threshold=settings.default_threshold,
            max_threshold=settings.max_threshold,
            default_duration_hours=settings.default_duration_hours,
            max_duration_hours=settings.max_duration_hours,
        )
        if command is None:
            logger.info("[Webhook] No command found, ignoring")
            return {"success": True, "status": "ignored", "reason": "no_command"}
        logger.info(
            "[Webhook] Command parsed: {} likes in {}h", command.threshold, command.duration_hours
        )

        existing_id = self.find_existing_market(metadata.hash)
        if existing_id is not None:
            logger.info("[Webhook] Market #{} already tracks cast {}", existing_id, metadata.hash)
            self._reply(
                metadata.hash,
                "Market already exists!\n\n"
                f"Market #{existing_id} is already tracking this cast.\n\n"
                f"Bet now: {self._market_link(existing_id)}",
            )
            return {"success": True, "status": "exists", "marketId": existing_id}

        cast_url = build_cast_url(username, metadata.hash)
        deadline_ts = int((self._clock() + timedelta(hours=command.duration_hours)).timestamp())
        deadline = datetime.fromtimestamp(deadline_ts, tz=timezone.utc)
        receipt = self._ledger.create_market(cast_url, command.threshold, deadline_ts)
        tx_hash = receipt_tx_hash(receipt)
        event = self._ledger.parse_market_created(receipt)
        if event is not None:
            market_id = event.market_id
        else:
            logger.warning("[Webhook] No MarketCreated event in {}; reading nextMarketId", tx_hash)
            market_id = self._ledger.next_market_id() - 1
        logger.info("[Webhook] Market #{} created in {}", market_id, tx_hash)

        self._cache_new_market(
            MarketIndexInput(
                market_id=market_id,
                cast_hash=metadata.hash,
                cast_url=cast_url,
                author_username=metadata.author_username,
                author_pfp_url=metadata.author_pfp_url,
                cast_text=metadata.text,
                threshold=command.threshold,
                deadline=deadline,
                status=MarketStatus.ACTIVE.value,
                outcome=int(Outcome.UNRESOLVED),
                resolved=False,
                creator=self._ledger.signer_address,
                likes_count=metadata.likes_count,
            ),
            metadata,
        )

        self._reply(
            metadata.hash,
            "Market Created!\n\n"
            "Based or Erased?\n"
            f"Goal: {command.threshold} likes in {command.duration_hours}h\n"
            f"Bet {settings.default_bet_amount_usdc} USDC on the outcome\n\n"
            f"Bet now: {self._market_link(market_id)}",
        )
        return {"success": True, "status": "created", "marketId": market_id, "txHash": tx_hash}

    def find_existing_market(self, cast_hash: str) -> int | None:
        """Look in the cache first, then scan every market on the ledger."""

        with session_scope(self._session_factory) as session:
            cached = MarketIndexRepository(session).find_by_cast_hash(cast_hash)
            if cached is not None:
                return cached.market_id

        for market_id in range(1, self._ledger.market_count() + 1):
            market = self._ledger.get_market(market_id)
            if market is not None and cast_url_matches(market.cast_url, cast_hash):
                return market_id
        return None

    def _cache_new_market(self, row: MarketIndexInput, metadata: CastMetadata) -> None:
        try:
            with session_scope(self._session_factory) as session:
                MarketIndexRepository(session).upsert_market(row)
                SnapshotRepository(session).record_snapshot(row.market_id, metadata)
        except SQLAlchemyError as exc:
            # The market exists on chain; the next index run fills the cache.
            logger.error("[Webhook] Failed to cache market #{}: {}", row.market_id, exc)

    def _market_link(self, market_id: int) -> str:
        return f"{self._settings.app_url.rstrip('/')}/miniapp?marketId={market_id}"

    def _reply(self, parent_hash: str, text: str) -> bool:
        signer = self._settings.neynar_signer_uuid
        if not signer:
            logger.info("[Webhook] Skipping reply: NEYNAR_SIGNER_UUID is not set")
            return False
        try:
            self._neynar.publish_reply(signer_uuid=signer, parent_hash=parent_hash, text=text)
        except NeynarError as exc:
            logger.error("[Webhook] Reply to {} failed: {}", parent_hash, exc)
            return False
        return True


def decode_payload(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None
