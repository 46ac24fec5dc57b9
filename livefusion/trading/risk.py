"""
Risk & Exposure Ledger.

Holds RiskState: bankroll, today's wagered/returned, loss streak, inflight
count, open conditions and exposure accumulators by match, condition and
sport. The decision engine's risk checks and the reservation they lead to
run as one critical section under `lock`, so two opportunities on the same
condition can never both pass the duplicate check.

Every mutation is driven by a decision transition; `rebuild` replays the
audit ledger through the same transitions on restart.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Optional

import structlog

from config.settings import PolicySettings
from livefusion.models.schemas import (
    BetDecision,
    DecisionState,
    LedgerRecord,
    RejectionReason,
    SettlementResult,
)
from livefusion.utils.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()


def utc_day(ts: float) -> date:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


@dataclass
class OpenPosition:
    """Exposure held by one decision between reservation and release."""
    decision_id: str
    condition_id: str
    match_key: str
    sport: str
    stake: float
    edge_pct: float
    price: float = 0.0
    external_id: Optional[str] = None
    submitted: bool = False
    inflight: bool = True
    reserved_at: float = 0.0
    # UTC day whose wagered_today counted the stake
    wagered_on: Optional[date] = None


@dataclass
class OpenCondition:
    decision_ids: list[str] = field(default_factory=list)
    best_edge_pct: float = 0.0
    rebets: int = 0


@dataclass
class RiskState:
    """Explicit risk state. One instance per engine, owned by RiskLedger."""
    bankroll: float
    day: date
    wagered_today: float = 0.0
    returned_today: float = 0.0
    reserved_today: float = 0.0
    loss_streak: int = 0
    inflight: int = 0
    positions: dict[str, OpenPosition] = field(default_factory=dict)
    open_conditions: dict[str, OpenCondition] = field(default_factory=dict)
    exposure_by_match: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    exposure_by_condition: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    exposure_by_sport: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    settled: set[str] = field(default_factory=set)

    @property
    def daily_loss(self) -> float:
        return max(0.0, self.wagered_today - self.returned_today)


@dataclass
class RiskCheck:
    """Result of the locked check-and-reserve step."""
    passed: bool
    reason: Optional[RejectionReason] = None
    detail: str = ""
    deferred: bool = False
    is_rebet: bool = False


class RiskLedger:
    """Exposure accounting and the risk half of the auto-bet checks."""

    def __init__(
        self,
        config: Optional[PolicySettings] = None,
        breaker: Optional[CircuitBreaker] = None,
        now: Optional[float] = None,
    ):
        self.config = config or PolicySettings()
        self.breaker = breaker or CircuitBreaker(
            daily_loss_limit=self.config.daily_loss_limit,
            loss_streak_limit=self.config.loss_streak_limit,
            cooldown_seconds=self.config.loss_streak_cooldown_seconds,
        )
        now = now if now is not None else time.time()
        self.state = RiskState(bankroll=self.config.starting_bankroll, day=utc_day(now))
        self.lock = asyncio.Lock()
        self.logger = logger.bind(component="risk_ledger")

    # =========================================================================
    # Checks 2-7 + reservation (caller holds self.lock)
    # =========================================================================

    def check_and_reserve(self, decision: BetDecision, now: Optional[float] = None) -> RiskCheck:
        """
        Run the duplicate, inflight, exposure, daily-loss, streak and bankroll
        checks in order, then the minimum stake. On pass, commit the
        reservation before returning.
        On failure nothing in RiskState changes.
        """
        now = now if now is not None else time.time()
        self._roll_day(now)
        s = self.state
        cfg = self.config
        stake = decision.stake
        edge = decision.opportunity.edge_pct

        # 2. Duplicate condition
        is_rebet = False
        held = s.open_conditions.get(decision.condition_id)
        if held is not None:
            if not cfg.allow_rebet:
                return RiskCheck(False, RejectionReason.DUPLICATE_CONDITION, "condition already held")
            if held.rebets >= cfg.max_rebets_per_condition:
                return RiskCheck(False, RejectionReason.DUPLICATE_CONDITION, "re-bet limit reached")
            if edge < held.best_edge_pct + cfg.rebet_min_edge_increase_pct:
                return RiskCheck(
                    False,
                    RejectionReason.DUPLICATE_CONDITION,
                    f"edge {edge:.1f} not above held {held.best_edge_pct:.1f} + {cfg.rebet_min_edge_increase_pct:.1f}",
                )
            is_rebet = True

        # 3. Inflight cap (deferral, not rejection)
        if s.inflight >= cfg.max_inflight:
            return RiskCheck(
                False, RejectionReason.INFLIGHT_CAP, f"{s.inflight} inflight", deferred=True
            )

        # 4. Exposure caps, fractions of current bankroll
        bankroll = s.bankroll
        caps = (
            ("bet", stake, cfg.max_bet_fraction),
            ("match", s.exposure_by_match.get(decision.match_key, 0.0) + stake, cfg.max_match_fraction),
            ("condition", s.exposure_by_condition.get(decision.condition_id, 0.0) + stake, cfg.max_condition_fraction),
            ("sport", s.exposure_by_sport.get(decision.sport, 0.0) + stake, cfg.max_sport_fraction),
            ("daily", s.reserved_today + stake, cfg.max_daily_fraction),
        )
        for name, exposure, fraction in caps:
            limit = bankroll * fraction
            if exposure > limit + 1e-9:
                return RiskCheck(
                    False,
                    RejectionReason.EXPOSURE_CAP,
                    f"{name} exposure {exposure:.2f} > {limit:.2f}",
                )

        # 5. Daily loss
        if self.breaker.daily_loss_exceeded(s.wagered_today, s.returned_today, now):
            return RiskCheck(
                False, RejectionReason.DAILY_LOSS_LIMIT, f"daily loss {s.daily_loss:.2f}"
            )

        # 6. Loss streak cooldown
        if self.breaker.in_cooldown(now):
            return RiskCheck(False, RejectionReason.LOSS_STREAK_COOLDOWN, "cooling down")

        # 7. Bankroll floor
        if bankroll < cfg.min_bankroll:
            return RiskCheck(
                False,
                RejectionReason.BANKROLL_FLOOR,
                f"bankroll {bankroll:.2f} < {cfg.min_bankroll:.2f}",
            )

        if stake < cfg.min_stake:
            return RiskCheck(
                False, RejectionReason.STAKE_TOO_SMALL, f"stake {stake:.2f} < {cfg.min_stake:.2f}"
            )

        self._reserve(
            decision.decision_id,
            decision.condition_id,
            decision.match_key,
            decision.sport,
            stake,
            edge,
            decision.opportunity.market_price,
            now,
            is_rebet,
        )
        return RiskCheck(True, is_rebet=is_rebet)

    def _reserve(
        self,
        decision_id: str,
        condition_id: str,
        match_key: str,
        sport: str,
        stake: float,
        edge_pct: float,
        price: float,
        now: float,
        is_rebet: bool = False,
    ) -> None:
        s = self.state
        s.positions[decision_id] = OpenPosition(
            decision_id=decision_id,
            condition_id=condition_id,
            match_key=match_key,
            sport=sport,
            stake=stake,
            edge_pct=edge_pct,
            price=price,
            reserved_at=now,
        )
        held = s.open_conditions.setdefault(condition_id, OpenCondition())
        held.decision_ids.append(decision_id)
        held.best_edge_pct = max(held.best_edge_pct, edge_pct)
        if is_rebet:
            held.rebets += 1

        s.exposure_by_match[match_key] += stake
        s.exposure_by_condition[condition_id] += stake
        s.exposure_by_sport[sport] += stake
        s.reserved_today += stake
        s.inflight += 1

    # =========================================================================
    # Transitions
    # =========================================================================

    def release(self, decision_id: str) -> bool:
        """Undo a reservation that never reached Submitted (state gate, executor failure)."""
        position = self.state.positions.get(decision_id)
        if position is None or position.submitted:
            return False
        self._release_position(position)
        return True

    def mark_submitted(self, decision_id: str, external_id: Optional[str] = None) -> None:
        position = self.state.positions.get(decision_id)
        if position is None or position.submitted:
            return
        position.submitted = True
        position.external_id = external_id
        position.wagered_on = self.state.day
        self.state.wagered_today += position.stake
        self.state.bankroll -= position.stake

    def mark_confirmed(self, decision_id: str) -> None:
        position = self.state.positions.get(decision_id)
        if position is None or not position.inflight:
            return
        position.inflight = False
        self.state.inflight -= 1

    def mark_rejected(self, decision_id: str) -> bool:
        """
        Executor reported the bet not accepted after submission. The stake
        never left: refund it and release every accumulator. Streak untouched.
        """
        position = self.state.positions.get(decision_id)
        if position is None:
            return False
        if position.submitted:
            if self._counted_today(position):
                self.state.wagered_today = max(0.0, self.state.wagered_today - position.stake)
            self.state.bankroll += position.stake
        self._release_position(position)
        return True

    def _counted_today(self, position: OpenPosition) -> bool:
        """Daily counters only move for stakes wagered on the current UTC day."""
        return position.wagered_on == self.state.day

    def settle(
        self,
        decision_id: str,
        result: SettlementResult,
        payout: float = 0.0,
        now: Optional[float] = None,
    ) -> bool:
        """
        Apply a terminal result. Idempotent: a second settlement of the same
        decision is ignored.

        Returns:
            True if this call changed RiskState
        """
        now = now if now is not None else time.time()
        self._roll_day(now)
        s = self.state

        if decision_id in s.settled:
            self.logger.debug("Duplicate settlement ignored", decision_id=decision_id)
            return False
        position = s.positions.get(decision_id)
        if position is None or not position.submitted:
            self.logger.warning("Settlement for unknown or unsubmitted decision", decision_id=decision_id)
            return False

        s.settled.add(decision_id)
        counts_today = self._counted_today(position)

        if result == SettlementResult.WON:
            if counts_today:
                s.returned_today += payout
            s.bankroll += payout
            s.loss_streak = 0
        elif result == SettlementResult.LOST:
            s.loss_streak += 1
            if self.breaker.record_loss_streak(s.loss_streak, now):
                s.loss_streak = 0
        else:
            if counts_today:
                s.returned_today += position.stake
            s.bankroll += position.stake

        self._release_position(position)

        self.logger.info(
            "💰 Bet settled",
            decision_id=decision_id,
            result=result.value,
            stake=f"{position.stake:.2f}",
            payout=f"{payout:.2f}",
            bankroll=f"{s.bankroll:.2f}",
            loss_streak=s.loss_streak,
        )
        return True

    def _release_position(self, position: OpenPosition) -> None:
        s = self.state
        s.positions.pop(position.decision_id, None)

        held = s.open_conditions.get(position.condition_id)
        if held is not None:
            if position.decision_id in held.decision_ids:
                held.decision_ids.remove(position.decision_id)
            if not held.decision_ids:
                del s.open_conditions[position.condition_id]

        for bucket, key in (
            (s.exposure_by_match, position.match_key),
            (s.exposure_by_condition, position.condition_id),
            (s.exposure_by_sport, position.sport),
        ):
            remaining = bucket.get(key, 0.0) - position.stake
            if remaining > 1e-9:
                bucket[key] = remaining
            else:
                bucket.pop(key, None)

        if utc_day(position.reserved_at) == s.day:
            s.reserved_today = max(0.0, s.reserved_today - position.stake)
        if position.inflight:
            position.inflight = False
            s.inflight -= 1

    def _roll_day(self, now: float) -> None:
        today = utc_day(now)
        if today == self.state.day:
            return
        self.logger.info(
            "📅 New trading day, daily counters reset",
            previous_day=self.state.day.isoformat(),
            wagered=f"{self.state.wagered_today:.2f}",
            returned=f"{self.state.returned_today:.2f}",
        )
        self.state.day = today
        self.state.wagered_today = 0.0
        self.state.returned_today = 0.0
        self.state.reserved_today = 0.0

    # =========================================================================
    # Restart
    # =========================================================================

    def rebuild(self, records: Iterable[LedgerRecord], now: Optional[float] = None) -> int:
        """
        Replay audit records into a fresh RiskState.

        A decision with a Proposed record but no Submitted record is treated
        as never placed.

        Returns:
            Number of records applied
        """
        now = now if now is not None else time.time()
        self.state = RiskState(bankroll=self.config.starting_bankroll, day=utc_day(now))
        today = self.state.day
        applied = 0
        unconfirmed_proposals: set[str] = set()

        for record in records:
            applied += 1
            t = record.transition
            if t == DecisionState.PROPOSED:
                self._reserve(
                    record.decision_id,
                    record.condition_id,
                    record.match_key,
                    record.sport,
                    record.stake,
                    record.edge_pct,
                    record.price,
                    record.ts,
                    is_rebet=record.condition_id in self.state.open_conditions,
                )
                if utc_day(record.ts) != today:
                    self.state.reserved_today = max(0.0, self.state.reserved_today - record.stake)
                unconfirmed_proposals.add(record.decision_id)
            elif t == DecisionState.SUBMITTED:
                unconfirmed_proposals.discard(record.decision_id)
                position = self.state.positions.get(record.decision_id)
                if position is None or position.submitted:
                    continue
                position.submitted = True
                position.external_id = record.external_id
                position.wagered_on = utc_day(record.ts)
                self.state.bankroll -= position.stake
                if position.wagered_on == today:
                    self.state.wagered_today += position.stake
            elif t == DecisionState.CONFIRMED:
                self.mark_confirmed(record.decision_id)
            elif t == DecisionState.REJECTED:
                unconfirmed_proposals.discard(record.decision_id)
                position = self.state.positions.get(record.decision_id)
                if position is None:
                    continue
                if position.submitted:
                    self.state.bankroll += position.stake
                    if position.wagered_on == today:
                        self.state.wagered_today = max(0.0, self.state.wagered_today - position.stake)
                self._release_position(position)
            elif t == DecisionState.SETTLED:
                self._replay_settlement(record, today, now)

        for decision_id in unconfirmed_proposals:
            position = self.state.positions.get(decision_id)
            if position is not None and not position.submitted:
                self.logger.warning(
                    "Proposed decision without submission on replay, releasing",
                    decision_id=decision_id,
                    condition_id=position.condition_id,
                )
                self._release_position(position)

        self.logger.info(
            "Risk state rebuilt from audit ledger",
            records=applied,
            bankroll=f"{self.state.bankroll:.2f}",
            open_positions=len(self.state.positions),
            inflight=self.state.inflight,
        )
        return applied

    def _replay_settlement(self, record: LedgerRecord, today: date, now: float) -> None:
        s = self.state
        position = s.positions.get(record.decision_id)
        if position is None or record.decision_id in s.settled:
            return
        s.settled.add(record.decision_id)
        counts_today = position.wagered_on == today

        if record.settlement == SettlementResult.WON:
            s.bankroll += record.payout
            if counts_today:
                s.returned_today += record.payout
            s.loss_streak = 0
        elif record.settlement == SettlementResult.LOST:
            s.loss_streak += 1
            if s.loss_streak >= self.config.loss_streak_limit:
                # Cooldown window is re-armed only if it would still be running
                cooldown_end = record.ts + self.config.loss_streak_cooldown_seconds
                if cooldown_end > now:
                    self.breaker.record_loss_streak(s.loss_streak, record.ts)
                s.loss_streak = 0
        else:
            s.bankroll += position.stake
            if counts_today:
                s.returned_today += position.stake

        self._release_position(position)

    # =========================================================================
    # Queries
    # =========================================================================

    def pending_confirmations(self) -> list[OpenPosition]:
        """Submitted positions still awaiting executor confirmation."""
        return [p for p in self.state.positions.values() if p.submitted and p.inflight]

    def position(self, decision_id: str) -> Optional[OpenPosition]:
        return self.state.positions.get(decision_id)

    def snapshot(self) -> dict:
        s = self.state
        return {
            "bankroll": round(s.bankroll, 2),
            "day": s.day.isoformat(),
            "wagered_today": round(s.wagered_today, 2),
            "returned_today": round(s.returned_today, 2),
            "daily_loss": round(s.daily_loss, 2),
            "loss_streak": s.loss_streak,
            "inflight": s.inflight,
            "open_positions": len(s.positions),
            "open_conditions": sorted(s.open_conditions),
            "exposure_by_match": {k: round(v, 2) for k, v in s.exposure_by_match.items()},
            "exposure_by_sport": {k: round(v, 2) for k, v in s.exposure_by_sport.items()},
            "circuit_breaker": self.breaker.get_status(),
        }
