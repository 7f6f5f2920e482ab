from __future__ import annotations

import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.domain import CastMetadata, LedgerMarket, MarketCreatedEvent, Outcome, UserBet
from integrations.neynar import CastNotFoundError, LikeCollection, NeynarError
from pipelines.context import PipelineContext

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CONTRACT_ADDRESS = "0x" + "11" * 20
USDC_ADDRESS = "0x" + "22" * 20
SIGNER_ADDRESS = "0x" + "33" * 20


class FakeLedger:
    """In-memory stand-in for ``LedgerClient``."""

    contract_address = CONTRACT_ADDRESS
    signer_address = SIGNER_ADDRESS

    def __init__(self) -> None:
        self.markets: dict[int, LedgerMarket] = {}
        self.bets: dict[tuple[int, str], UserBet] = {}
        self.resolutions: list[tuple[int, Outcome]] = []
        self.created: list[tuple[str, int, int]] = []
        self.receipts: dict[str, dict[str, Any]] = {}
        self.failing_ids: set[int] = set()
        self.resolve_error: Exception | None = None
        self.emit_created_event = True
        self.resolve_on_read: set[int] = set()

    def add(self, market: LedgerMarket) -> LedgerMarket:
        self.markets[market.market_id] = market
        return market

    def next_market_id(self) -> int:
        return max(self.markets, default=0) + 1

    def market_count(self) -> int:
        return self.next_market_id() - 1

    def get_market(self, market_id: int) -> LedgerMarket | None:
        from integrations.ledger import LedgerError

        if market_id in self.failing_ids:
            raise LedgerError(f"failed to read market {market_id}: rpc timeout")
        market = self.markets.get(market_id)
        if market is not None and market_id in self.resolve_on_read:
            # Simulates another runner settling the market between two reads.
            self.resolve_on_read.discard(market_id)
            self.markets[market_id] = replace(market, resolved=True, outcome=Outcome.MOON)
        return market

    def get_user_bet(self, market_id: int, address: str) -> UserBet:
        if not address.startswith("0x") or len(address) != 42:
            raise ValueError(f"Invalid Ethereum address: {address}")
        return self.bets.get((market_id, address.lower()), UserBet(0, 0, False))

    def resolve_market(self, market_id: int, outcome: Outcome) -> str:
        if self.resolve_error is not None:
            raise self.resolve_error
        self.resolutions.append((market_id, outcome))
        self.markets[market_id] = replace(self.markets[market_id], resolved=True, outcome=outcome)
        return "0x" + f"{market_id:064x}"

    def create_market(self, cast_url: str, threshold: int, deadline: int) -> dict[str, Any]:
        self.created.append((cast_url, threshold, deadline))
        market = self.add(
            LedgerMarket(
                market_id=self.next_market_id(),
                cast_url=cast_url,
                threshold=threshold,
                deadline=deadline,
                total_moon_bets=0,
                total_doom_bets=0,
                outcome=Outcome.UNRESOLVED,
                resolved=False,
                creator=SIGNER_ADDRESS,
            )
        )
        return {
            "status": 1,
            "transactionHash": bytes.fromhex(f"{market.market_id:064x}"),
            "market_id": market.market_id,
        }

    def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        return self.receipts[tx_hash]

    def parse_market_created(self, receipt: dict[str, Any]) -> MarketCreatedEvent | None:
        if not self.emit_created_event or "market_id" not in receipt:
            return None
        market = self.markets[receipt["market_id"]]
        return MarketCreatedEvent(
            market_id=market.market_id,
            cast_url=market.cast_url,
            threshold=market.threshold,
            deadline=market.deadline,
            creator=market.creator,
        )

    def encode_call(self, function_name: str, args) -> str:
        return f"0x{function_name}:" + ",".join(str(arg) for arg in args)

    def encode_approve(self, token_address: str, amount: int) -> str:
        return f"0xapprove:{CONTRACT_ADDRESS},{amount}"


class FakeNeynar:
    """In-memory stand-in for ``NeynarClient``."""

    def __init__(self) -> None:
        self.casts: dict[str, CastMetadata] = {}
        self.urls: dict[str, str] = {}
        self.likers: dict[str, list[int]] = {}
        self.scores: dict[int, float] = {}
        self.replies: list[dict[str, str]] = []
        self.unavailable = False
        self.truncate_likes: set[str] = set()
        self.calls: list[tuple[str, Any]] = []

    def add_cast(
        self,
        cast_hash: str,
        *,
        author: str = "alice",
        likes: int = 0,
        text: str = "gm",
        url: str | None = None,
        likers: list[int] | None = None,
    ) -> CastMetadata:
        metadata = CastMetadata(
            hash=cast_hash,
            author_username=author,
            author_pfp_url=f"https://img.example/{author}.png",
            author_fid=1,
            text=text,
            likes_count=likes,
        )
        self.casts[cast_hash.lower()] = metadata
        self.urls[f"https://warpcast.com/{author}/{cast_hash[:10]}".lower()] = cast_hash.lower()
        if url:
            self.urls[url.lower()] = cast_hash.lower()
        self.likers[cast_hash.lower()] = likers if likers is not None else list(range(1, likes + 1))
        return metadata

    def remove_cast(self, cast_hash: str) -> None:
        self.casts.pop(cast_hash.lower(), None)
        self.likers.pop(cast_hash.lower(), None)

    def _check(self) -> None:
        if self.unavailable:
            raise NeynarError("Neynar GET failed: 503", status_code=503)

    def fetch_cast(self, identifier: str, *, kind: str | None = None) -> CastMetadata:
        self.calls.append(("fetch_cast", identifier))
        self._check()
        key = identifier.lower()
        cast_hash = self.urls.get(key, key)
        if cast_hash not in self.casts:
            raise CastNotFoundError(f"Neynar returned no cast for {identifier}", status_code=404)
        return self.casts[cast_hash]

    def fetch_casts(self, hashes) -> list[CastMetadata]:
        self.calls.append(("fetch_casts", list(hashes)))
        self._check()
        return [self.casts[h.lower()] for h in hashes if h.lower() in self.casts]

    def collect_likes(self, cast_hash: str, *, page_limit: int, page_size: int = 100) -> LikeCollection:
        self.calls.append(("collect_likes", cast_hash))
        self._check()
        key = cast_hash.lower()
        if key not in self.casts:
            raise CastNotFoundError("Neynar returned 404", status_code=404)
        fids = list(self.likers.get(key, []))
        return LikeCollection(liker_fids=fids, pages_read=1, truncated=key in self.truncate_likes)

    def fetch_user_scores(self, fids) -> dict[int, float]:
        fids = list(fids)
        self.calls.append(("fetch_user_scores", fids))
        self._check()
        return {fid: self.scores.get(fid, 0.0) for fid in fids}

    def publish_reply(self, *, signer_uuid: str, parent_hash: str, text: str) -> str | None:
        self.replies.append({"parent": parent_hash, "text": text})
        return "0xreply"

    def close(self) -> None:
        pass


def full_hash(seed: int) -> str:
    """A 42 character cast hash whose 10 character prefix is unique per seed."""

    return "0x" + f"{seed:08x}" + "c0ffee" * 5 + "ab"


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'castpredict.db'}",
        contract_address=CONTRACT_ADDRESS,
        usdc_address=USDC_ADDRESS,
        neynar_api_key="test-key",
        neynar_signer_uuid="signer-uuid",
        neynar_webhook_secret=None,
        cron_secret=None,
        indexer_delay_seconds=0,
        resolver_delay_seconds=0,
        admin_wallets="0xAD355883F2044F7E666270685957d190135359ad",
        webhook_mention_handle="basedorerased",
        app_url="https://app.example",
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def fake_neynar() -> FakeNeynar:
    return FakeNeynar()


@pytest.fixture
def pipeline_context(test_settings, session_factory, fake_ledger, fake_neynar) -> PipelineContext:
    sleeps: list[float] = []
    context = PipelineContext(
        test_settings,
        session_factory=session_factory,
        ledger=fake_ledger,
        neynar=fake_neynar,
        sleep=sleeps.append,
        clock=lambda: NOW,
    )
    context.sleeps = sleeps
    return context


@pytest.fixture
def make_market():
    def _make(
        market_id: int,
        *,
        cast_url: str | None = None,
        threshold: int = 100,
        deadline: datetime | None = None,
        resolved: bool = False,
        outcome: Outcome = Outcome.UNRESOLVED,
        creator: str = SIGNER_ADDRESS,
    ) -> LedgerMarket:
        deadline = deadline or NOW + timedelta(hours=12)
        return LedgerMarket(
            market_id=market_id,
            cast_url=cast_url or f"https://warpcast.com/alice/{full_hash(market_id)[:10]}",
            threshold=threshold,
            deadline=int(deadline.timestamp()),
            total_moon_bets=5_000_000,
            total_doom_bets=2_000_000,
            outcome=outcome,
            resolved=resolved,
            creator=creator,
        )

    return _make
