"""Tests for the risk & exposure ledger."""

import pytest

from config.settings import PolicySettings
from livefusion.models.schemas import BetDecision, DecisionState, RejectionReason, SettlementResult
from livefusion.trading.audit import AuditLedger
from livefusion.trading.risk import RiskLedger


@pytest.fixture
def make_decision(make_opportunity, now):
    counter = iter(range(1, 1000))

    def _make(condition_id: str = "cond-1", stake: float = 20.0, edge_pct: float = 23.0, teams=("arsenal", "chelsea")):
        opp = make_opportunity(condition_id=condition_id, edge_pct=edge_pct, teams=teams)
        return BetDecision(
            decision_id=f"d{next(counter)}",
            opportunity=opp,
            stake=stake,
            condition_id=condition_id,
            outcome_id=opp.outcome_id,
            min_odds=opp.market_price,
            decided_at=now,
        )

    return _make


def placed(risk: RiskLedger, decision: BetDecision, now: float) -> BetDecision:
    """Reserve and submit a decision."""
    assert risk.check_and_reserve(decision, now).passed
    risk.mark_submitted(decision.decision_id, f"bet-{decision.decision_id}")
    return decision


class TestCheckAndReserve:
    """Tests for the locked risk checks."""

    def test_pass_reserves_exposure(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = make_decision()

        check = risk.check_and_reserve(decision, now)
        assert check.passed
        s = risk.state
        assert s.inflight == 1
        assert s.exposure_by_condition["cond-1"] == 20.0
        assert s.exposure_by_match[decision.match_key] == 20.0
        assert s.exposure_by_sport["football"] == 20.0
        assert s.reserved_today == 20.0
        assert "cond-1" in s.open_conditions

    def test_duplicate_condition(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        risk.check_and_reserve(make_decision(), now)

        check = risk.check_and_reserve(make_decision(edge_pct=40.0), now)
        assert not check.passed
        assert check.reason == RejectionReason.DUPLICATE_CONDITION

    def test_rebet_needs_strictly_growing_edge(self, make_decision, now):
        policy = PolicySettings(
            allow_rebet=True,
            rebet_min_edge_increase_pct=5.0,
            max_rebets_per_condition=1,
            max_condition_fraction=0.5,
            max_match_fraction=0.5,
        )
        risk = RiskLedger(policy, now=now)
        risk.check_and_reserve(make_decision(edge_pct=20.0), now)

        assert risk.check_and_reserve(make_decision(edge_pct=24.0), now).reason == RejectionReason.DUPLICATE_CONDITION
        rebet = risk.check_and_reserve(make_decision(edge_pct=26.0), now)
        assert rebet.passed and rebet.is_rebet
        assert risk.check_and_reserve(make_decision(edge_pct=40.0), now).reason == RejectionReason.DUPLICATE_CONDITION

    def test_inflight_cap_defers(self, make_decision, now):
        risk = RiskLedger(PolicySettings(max_inflight=1), now=now)
        risk.check_and_reserve(make_decision("cond-1"), now)

        check = risk.check_and_reserve(make_decision("cond-2", teams=("everton", "fulham")), now)
        assert not check.passed
        assert check.deferred
        assert check.reason == RejectionReason.INFLIGHT_CAP

    @pytest.mark.parametrize("overrides,stake", [
        ({"max_bet_fraction": 0.01}, 20.0),
        ({"max_condition_fraction": 0.01}, 20.0),
        ({"max_match_fraction": 0.01}, 20.0),
        ({"max_sport_fraction": 0.01}, 20.0),
        ({"max_daily_fraction": 0.01}, 20.0),
    ])
    def test_exposure_caps_leave_state_unchanged(self, make_decision, now, overrides, stake):
        risk = RiskLedger(PolicySettings(**overrides), now=now)
        before = risk.snapshot()

        check = risk.check_and_reserve(make_decision(stake=stake), now)
        assert not check.passed
        assert check.reason == RejectionReason.EXPOSURE_CAP
        assert risk.snapshot() == before

    def test_match_cap_across_conditions(self, make_decision, now):
        risk = RiskLedger(PolicySettings(max_match_fraction=0.03), now=now)
        assert risk.check_and_reserve(make_decision("cond-1", stake=20.0), now).passed

        check = risk.check_and_reserve(make_decision("cond-2", stake=20.0), now)
        assert check.reason == RejectionReason.EXPOSURE_CAP
        assert "match" in check.detail

    def test_bankroll_floor(self, make_decision, now):
        risk = RiskLedger(PolicySettings(starting_bankroll=15.0, min_bankroll=20.0), now=now)
        check = risk.check_and_reserve(make_decision(stake=0.3), now)
        assert check.reason == RejectionReason.BANKROLL_FLOOR

    def test_stake_below_minimum(self, make_decision, now):
        risk = RiskLedger(PolicySettings(min_stake=1.0), now=now)
        check = risk.check_and_reserve(make_decision(stake=0.5), now)
        assert check.reason == RejectionReason.STAKE_TOO_SMALL
        assert risk.state.positions == {}


class TestTransitions:
    """Tests for submission, rejection and settlement accounting."""

    def test_submit_moves_stake(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        placed(risk, make_decision(), now)
        assert risk.state.bankroll == 980.0
        assert risk.state.wagered_today == 20.0

    def test_release_only_before_submit(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = make_decision()
        risk.check_and_reserve(decision, now)
        assert risk.release(decision.decision_id) is True
        assert risk.state.inflight == 0
        assert risk.state.open_conditions == {}

        other = placed(risk, make_decision(), now)
        assert risk.release(other.decision_id) is False

    def test_rejected_after_submit_refunds(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = placed(risk, make_decision(), now)

        assert risk.mark_rejected(decision.decision_id)
        assert risk.state.bankroll == 1000.0
        assert risk.state.wagered_today == 0.0
        assert risk.state.inflight == 0
        assert risk.state.loss_streak == 0

    def test_confirm_clears_inflight_keeps_exposure(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = placed(risk, make_decision(), now)
        risk.mark_confirmed(decision.decision_id)

        assert risk.state.inflight == 0
        assert risk.state.exposure_by_condition["cond-1"] == 20.0
        assert risk.pending_confirmations() == []

    def test_settle_won(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = placed(risk, make_decision(), now)

        assert risk.settle(decision.decision_id, SettlementResult.WON, 36.36, now)
        assert risk.state.bankroll == pytest.approx(1016.36)
        assert risk.state.returned_today == pytest.approx(36.36)
        assert risk.state.positions == {}
        assert risk.state.open_conditions == {}

    def test_settle_is_idempotent(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = placed(risk, make_decision(), now)

        assert risk.settle(decision.decision_id, SettlementResult.WON, 36.36, now)
        bankroll = risk.state.bankroll
        assert not risk.settle(decision.decision_id, SettlementResult.WON, 36.36, now)
        assert not risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, now)
        assert risk.state.bankroll == bankroll

    def test_settle_canceled_refunds(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = placed(risk, make_decision(), now)
        risk.settle(decision.decision_id, SettlementResult.CANCELED, 0.0, now)
        assert risk.state.bankroll == 1000.0
        assert risk.state.daily_loss == 0.0

    def test_settle_unsubmitted_ignored(self, make_decision, now):
        risk = RiskLedger(PolicySettings(), now=now)
        decision = make_decision()
        risk.check_and_reserve(decision, now)
        assert not risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, now)


class TestLossLimits:
    """Tests for the daily loss and loss streak checks."""

    def test_daily_loss_limit_latches(self, make_decision, now):
        risk = RiskLedger(PolicySettings(daily_loss_limit=30.0, loss_streak_limit=10), now=now)
        for i, teams in enumerate((("a club", "b club"), ("c club", "d club"))):
            decision = placed(risk, make_decision(f"cond-{i}", teams=teams), now)
            risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, now)

        check = risk.check_and_reserve(make_decision("cond-9", edge_pct=90.0, teams=("e club", "f club")), now)
        assert check.reason == RejectionReason.DAILY_LOSS_LIMIT
        assert risk.breaker.state.is_tripped

    def test_loss_streak_cooldown(self, make_decision, now):
        policy = PolicySettings(loss_streak_limit=2, loss_streak_cooldown_seconds=600, daily_loss_limit=1000)
        risk = RiskLedger(policy, now=now)
        for i, teams in enumerate((("a club", "b club"), ("c club", "d club"))):
            decision = placed(risk, make_decision(f"cond-{i}", teams=teams), now)
            risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, now)

        assert risk.state.loss_streak == 0
        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), now + 10)
        assert check.reason == RejectionReason.LOSS_STREAK_COOLDOWN
        assert risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), now + 601).passed

    def test_win_resets_streak(self, make_decision, now):
        risk = RiskLedger(PolicySettings(loss_streak_limit=3, daily_loss_limit=1000), now=now)
        lost = placed(risk, make_decision("cond-1", teams=("a club", "b club")), now)
        risk.settle(lost.decision_id, SettlementResult.LOST, 0.0, now)
        won = placed(risk, make_decision("cond-2", teams=("c club", "d club")), now)
        risk.settle(won.decision_id, SettlementResult.WON, 40.0, now)
        assert risk.state.loss_streak == 0


def next_midnight(now: float) -> float:
    """Start of the next UTC day after `now`."""
    return float((int(now) // 86400 + 1) * 86400)


class TestDayBoundary:
    """Tests for loss controls across midnight UTC."""

    def test_cooldown_survives_daily_latch_and_rollover(self, make_decision, now):
        midnight = next_midnight(now)
        policy = PolicySettings(daily_loss_limit=50.0, loss_streak_limit=3, loss_streak_cooldown_seconds=1800)
        risk = RiskLedger(policy, now=midnight - 600)
        for i, teams in enumerate((("a club", "b club"), ("c club", "d club"), ("g club", "h club"))):
            decision = placed(risk, make_decision(f"cond-{i}", teams=teams), midnight - 600)
            assert risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, midnight - 600)

        assert risk.breaker.in_cooldown(midnight - 590)
        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight - 590)
        assert check.reason == RejectionReason.DAILY_LOSS_LIMIT

        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight + 300)
        assert check.reason == RejectionReason.LOSS_STREAK_COOLDOWN
        assert not risk.breaker.state.daily_tripped

    def test_streak_arms_cooldown_while_daily_latched(self, make_decision, now):
        midnight = next_midnight(now)
        policy = PolicySettings(daily_loss_limit=30.0, loss_streak_limit=3, loss_streak_cooldown_seconds=1800)
        risk = RiskLedger(policy, now=midnight - 600)
        decisions = [
            placed(risk, make_decision(f"cond-{i}", teams=teams), midnight - 600)
            for i, teams in enumerate((("a club", "b club"), ("c club", "d club"), ("g club", "h club")))
        ]
        for decision in decisions:
            risk.mark_confirmed(decision.decision_id)
        for decision in decisions[:2]:
            risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, midnight - 600)

        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight - 590)
        assert check.reason == RejectionReason.DAILY_LOSS_LIMIT

        risk.settle(decisions[2].decision_id, SettlementResult.LOST, 0.0, midnight - 580)
        assert risk.state.loss_streak == 0
        assert risk.breaker.in_cooldown(midnight + 300)

        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight + 300)
        assert check.reason == RejectionReason.LOSS_STREAK_COOLDOWN
        assert risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight + 1300).passed

    @pytest.mark.parametrize("resolve", ["rejected", "canceled"])
    def test_yesterdays_stake_leaves_today_counters(self, make_decision, now, resolve):
        midnight = next_midnight(now)
        policy = PolicySettings(daily_loss_limit=30.0, loss_streak_limit=10)
        risk = RiskLedger(policy, now=midnight - 60)
        yesterday = placed(risk, make_decision("cond-0", teams=("y club", "z club")), midnight - 60)

        for i, teams in enumerate((("a club", "b club"), ("c club", "d club")), start=1):
            decision = placed(risk, make_decision(f"cond-{i}", teams=teams), midnight + 60)
            risk.settle(decision.decision_id, SettlementResult.LOST, 0.0, midnight + 60)
        assert risk.state.daily_loss == pytest.approx(40.0)

        if resolve == "rejected":
            assert risk.mark_rejected(yesterday.decision_id)
        else:
            assert risk.settle(yesterday.decision_id, SettlementResult.CANCELED, 0.0, midnight + 70)

        assert risk.state.daily_loss == pytest.approx(40.0)
        assert risk.state.bankroll == pytest.approx(960.0)
        check = risk.check_and_reserve(make_decision("cond-9", teams=("e club", "f club")), midnight + 80)
        assert check.reason == RejectionReason.DAILY_LOSS_LIMIT


class TestRebuild:
    """Tests for replaying the audit ledger into RiskState."""

    def test_replay_restores_state(self, tmp_path, now):
        ledger = AuditLedger(str(tmp_path / "ledger.jsonl"), fsync=False)
        common = {"match_key": "football::arsenal_vs_chelsea", "sport": "football", "stake": 20.0, "price": 1.8, "edge_pct": 23.0}

        # Submitted and still awaiting confirmation
        ledger.append("d1", DecisionState.PROPOSED, "cond-1", ts=now - 60, **common)
        ledger.append("d1", DecisionState.SUBMITTED, "cond-1", ts=now - 59, external_id="bet-1", **common)
        # Proposed, never submitted
        ledger.append("d2", DecisionState.PROPOSED, "cond-2", ts=now - 50, **common)
        # Settled as a loss
        ledger.append("d3", DecisionState.PROPOSED, "cond-3", ts=now - 40, **common)
        ledger.append("d3", DecisionState.SUBMITTED, "cond-3", ts=now - 39, external_id="bet-3", **common)
        ledger.append("d3", DecisionState.CONFIRMED, "cond-3", ts=now - 30, **common)
        ledger.append("d3", DecisionState.SETTLED, "cond-3", ts=now - 20, settlement=SettlementResult.LOST, **common)
        ledger.close()

        reopened = AuditLedger(str(tmp_path / "ledger.jsonl"), fsync=False)
        risk = RiskLedger(PolicySettings(), now=now)
        assert risk.rebuild(reopened.records(), now) == 7
        reopened.close()

        s = risk.state
        assert s.bankroll == 960.0
        assert s.wagered_today == 40.0
        assert s.loss_streak == 1
        assert set(s.positions) == {"d1"}
        assert set(s.open_conditions) == {"cond-1"}
        assert s.inflight == 1
        assert [p.external_id for p in risk.pending_confirmations()] == ["bet-1"]

    def test_replay_rejected_after_submit(self, tmp_path, now):
        ledger = AuditLedger(str(tmp_path / "ledger.jsonl"), fsync=False)
        common = {"match_key": "m", "sport": "football", "stake": 20.0}
        ledger.append("d1", DecisionState.PROPOSED, "cond-1", ts=now - 10, **common)
        ledger.append("d1", DecisionState.SUBMITTED, "cond-1", ts=now - 9, external_id="bet-1", **common)
        ledger.append("d1", DecisionState.REJECTED, "cond-1", ts=now - 5, reason="not confirmed", **common)

        risk = RiskLedger(PolicySettings(), now=now)
        risk.rebuild(ledger.records(), now)
        ledger.close()

        assert risk.state.bankroll == 1000.0
        assert risk.state.wagered_today == 0.0
        assert risk.state.positions == {}
        assert risk.state.inflight == 0
