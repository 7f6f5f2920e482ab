from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW, full_hash

from app.domain import Outcome
from app.repositories import MarketIndexRepository, UserScoreRepository
from integrations.ledger import LedgerError
from integrations.neynar import NeynarError
from integrations.service import session_scope
from pipelines.index_run import IndexPipeline
from pipelines.resolution_run import ResolutionPipeline, decide_outcome

DEADLINE = NOW + timedelta(hours=6)


@pytest.mark.parametrize(
    ("count", "now", "has_snapshot", "cast_found", "expected"),
    [
        (100, NOW, False, True, (Outcome.MOON, "threshold_reached")),
        (250, NOW + timedelta(days=1), True, True, (Outcome.MOON, "threshold_reached")),
        (0, NOW, True, False, (Outcome.DOOM, "cast_deleted")),
        (0, NOW, True, True, (None, "pending")),
        (0, NOW, False, False, (None, "pending")),
        (99, NOW + timedelta(hours=7), False, True, (Outcome.DOOM, "deadline_passed")),
        (0, NOW + timedelta(hours=7), False, False, (Outcome.DOOM, "deadline_passed")),
        (99, NOW, True, True, (None, "pending")),
        (0, NOW, False, True, (None, "pending")),
    ],
)
def test_decide_outcome(count, now, has_snapshot, cast_found, expected):
    assert (
        decide_outcome(
            count=count,
            threshold=100,
            deadline=DEADLINE,
            now=now,
            has_snapshot=has_snapshot,
            cast_found=cast_found,
        )
        == expected
    )


def test_threshold_reached_before_deadline_resolves_moon(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)
    IndexPipeline(pipeline_context).run()

    summary = ResolutionPipeline(pipeline_context).run()

    assert summary.resolved == 1
    assert fake_ledger.resolutions == [(1, Outcome.MOON)]
    assert summary.results[0].reason == "threshold_reached"
    with session_scope(pipeline_context.session_factory) as session:
        row = MarketIndexRepository(session).get_market(1)
        assert row.status == "based"
        assert row.resolved is True
        assert row.likes_count == 6


def test_deadline_passed_resolves_doom(pipeline_context, fake_ledger, fake_neynar, make_market):
    fake_ledger.add(make_market(1, threshold=50, deadline=NOW - timedelta(minutes=1)))
    fake_neynar.add_cast(full_hash(1), likes=10)

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == [(1, Outcome.DOOM)]
    assert summary.results[0].reason == "deadline_passed"


def test_deleted_cast_with_snapshot_resolves_doom_early(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=50))
    fake_neynar.add_cast(full_hash(1), likes=10)
    IndexPipeline(pipeline_context).run()
    fake_neynar.remove_cast(full_hash(1))

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == [(1, Outcome.DOOM)]
    assert summary.results[0].reason == "cast_deleted"



def test_live_cast_without_likes_stays_open_until_deadline(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=50))
    fake_neynar.add_cast(full_hash(1), likes=0)
    IndexPipeline(pipeline_context).run()

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == []
    assert summary.pending == 1
    assert summary.results[0].reason == "pending"
    assert summary.results[0].count == 0


def test_power_likes_mode_with_only_low_score_likers_stays_open(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    pipeline_context.settings.resolver_count_mode = "power_likes"
    fake_ledger.add(make_market(1, threshold=2))
    fake_neynar.add_cast(full_hash(1), likes=3, likers=[20, 21, 22])
    fake_neynar.scores = {20: 0.1, 21: 0.3, 22: 0.5}
    IndexPipeline(pipeline_context).run()

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == []
    assert summary.results[0].count == 0
    assert summary.results[0].reason == "pending"


def test_likes_mode_does_not_depend_on_user_scores(
    pipeline_context, fake_ledger, fake_neynar, make_market, monkeypatch
):
    fake_ledger.add(make_market(1, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)
    IndexPipeline(pipeline_context).run()

    def rate_limited(fids):
        raise NeynarError("user/bulk returned 429", status_code=429)

    monkeypatch.setattr(fake_neynar, "fetch_user_scores", rate_limited)

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == [(1, Outcome.MOON)]
    assert summary.errors == 0
    with session_scope(pipeline_context.session_factory) as session:
        assert MarketIndexRepository(session).get_market(1).power_likes_count is None


def test_open_market_below_threshold_stays_pending(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=50))
    fake_ledger.add(make_market(2, resolved=True, outcome=Outcome.MOON))
    fake_neynar.add_cast(full_hash(1), likes=10)
    IndexPipeline(pipeline_context).run()

    summary = ResolutionPipeline(pipeline_context).run()

    assert summary.checked == 1
    assert summary.pending == 1
    assert summary.skipped == 1
    assert fake_ledger.resolutions == []


def test_neynar_outage_is_an_error_not_a_zero_count(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=50))
    fake_neynar.add_cast(full_hash(1), likes=10)
    IndexPipeline(pipeline_context).run()
    fake_neynar.unavailable = True

    summary = ResolutionPipeline(pipeline_context).run()

    assert summary.errors == 1
    assert summary.results[0].action == "error"
    assert fake_ledger.resolutions == []


def test_failed_submission_is_reported_and_left_unresolved(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=5))
    fake_ledger.add(make_market(2, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)
    fake_neynar.add_cast(full_hash(2), likes=6)
    fake_ledger.resolve_error = LedgerError("resolveMarket transaction reverted: 0xabc")

    summary = ResolutionPipeline(pipeline_context).run()

    assert summary.errors == 2
    assert summary.resolved == 0
    assert not fake_ledger.markets[1].resolved


def test_market_resolved_between_reads_is_skipped(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)
    fake_ledger.resolve_on_read.add(1)

    summary = ResolutionPipeline(pipeline_context).run()

    assert fake_ledger.resolutions == []
    assert summary.skipped == 1
    assert summary.results[0].reason == "resolved_concurrently"


def test_dry_run_submits_nothing(pipeline_context, fake_ledger, fake_neynar, make_market):
    fake_ledger.add(make_market(1, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)

    summary = ResolutionPipeline(pipeline_context, dry_run=True).run()

    assert fake_ledger.resolutions == []
    assert summary.results[0].action == "would_resolve"
    assert summary.to_dict()["dry_run"] is True


def test_power_likes_mode_counts_high_score_likers(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    pipeline_context.settings.resolver_count_mode = "power_likes"
    fake_ledger.add(make_market(1, threshold=2))
    fake_neynar.add_cast(full_hash(1), likes=4, likers=[10, 11, 12, 13])
    fake_neynar.scores = {10: 0.95, 11: 0.2, 12: 0.71}
    with session_scope(pipeline_context.session_factory) as session:
        UserScoreRepository(session).upsert_scores({13: 0.99})

    summary = ResolutionPipeline(pipeline_context).run()

    decision = summary.results[0]
    assert decision.count == 3
    assert decision.action == "resolved"
    assert ("fetch_user_scores", [10, 11, 12]) in fake_neynar.calls


def test_short_url_hash_is_resolved_through_neynar(
    pipeline_context, fake_ledger, fake_neynar, make_market
):
    fake_ledger.add(make_market(1, threshold=5))
    fake_neynar.add_cast(full_hash(1), likes=6)

    ResolutionPipeline(pipeline_context).run()

    assert fake_neynar.calls[0] == (
        "fetch_cast",
        f"https://warpcast.com/alice/{full_hash(1)[:10]}",
    )
    assert ("collect_likes", full_hash(1)) in fake_neynar.calls


def test_prunes_old_resolved_rows(pipeline_context, fake_ledger, fake_neynar, make_market):
    fake_ledger.add(make_market(1, threshold=5, deadline=NOW - timedelta(days=40)))
    fake_neynar.add_cast(full_hash(1), likes=6)
    IndexPipeline(pipeline_context).run()

    summary = ResolutionPipeline(pipeline_context).run()

    assert summary.resolved == 1
    assert summary.pruned == 1
    with session_scope(pipeline_context.session_factory) as session:
        assert MarketIndexRepository(session).get_market(1) is None
