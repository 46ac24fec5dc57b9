"""
Auto-Bet Decision Engine.

Per decision: Proposed -> Submitted -> {Confirmed | Rejected} -> Settled -> Closed

Checks, in order; the first failure ends the attempt with a named reason:
    1. minimum edge (per sport / per signal), odds floor and ceiling
    2. duplicate condition (optional re-bet on strictly growing edge)
    3. inflight cap (defers instead of rejecting)
    4. exposure caps: bet, match, condition, sport, daily
    5. daily loss circuit breaker
    6. loss streak cooldown
    7. bankroll floor
    8. state gate: market still open on the venue

Checks 2-7 and the reservation they lead to run under the RiskLedger lock.
The executor is called at most once per decision. Confirmation is a
separately scheduled single poll.
"""

import asyncio
import time
from typing import Optional
from uuid import uuid4

import structlog

from config.settings import PolicySettings
from livefusion.errors import AuditLedgerError, ExecutorError, ExecutorUnavailable
from livefusion.models.schemas import (
    BetDecision,
    ConfidenceTier,
    DecisionOutcome,
    DecisionState,
    LedgerRecord,
    Opportunity,
    RejectionReason,
    SettlementResult,
    calculate_kelly_fraction,
)
from livefusion.trading.audit import AuditLedger
from livefusion.trading.confirmation import ConfirmationScheduler
from livefusion.trading.executor import BetState, Executor
from livefusion.trading.risk import RiskLedger
from livefusion.utils.alerts import DiscordAlerter

logger = structlog.get_logger()

# Rejections worth telling a human about when the opportunity was strong
_ALERTABLE_REASONS = frozenset({
    RejectionReason.ODDS_OUT_OF_RANGE,
    RejectionReason.INFLIGHT_CAP,
    RejectionReason.EXPOSURE_CAP,
    RejectionReason.DAILY_LOSS_LIMIT,
    RejectionReason.LOSS_STREAK_COOLDOWN,
    RejectionReason.BANKROLL_FLOOR,
    RejectionReason.STAKE_TOO_SMALL,
})


class AutoBetDecisionEngine:
    """Turns opportunities into audited, risk-checked bets."""

    def __init__(
        self,
        risk: RiskLedger,
        executor: Executor,
        ledger: AuditLedger,
        config: Optional[PolicySettings] = None,
        alerter: Optional[DiscordAlerter] = None,
        alert_min_edge_pct: float = 10.0,
        state_gate_timeout_seconds: float = 10.0,
    ):
        self.risk = risk
        self.executor = executor
        self.ledger = ledger
        self.config = config or risk.config
        self.alerter = alerter
        self.alert_min_edge_pct = alert_min_edge_pct
        self.state_gate_timeout_seconds = state_gate_timeout_seconds
        self.logger = logger.bind(component="decision_engine")

        self.scheduler = ConfirmationScheduler(
            executor=executor,
            on_result=self._on_confirmation,
            delay_seconds=self.config.confirmation_delay_seconds,
            timeout_seconds=self.config.confirmation_timeout_seconds,
        )

        self.halted = False
        self.halt_reason = ""
        self.decisions: dict[str, BetDecision] = {}
        self._replayed: dict[str, LedgerRecord] = {}

        # Stats
        self._rejection_counts: dict[str, int] = {}
        self._last_rejection_log_ms: int = 0
        self.submitted_total = 0
        self.confirmed_total = 0
        self.rejected_after_submit = 0
        self.deferred_total = 0
        self.settled_total = 0

    # =========================================================================
    # Policy helpers
    # =========================================================================

    def min_edge_for(self, sport: str, kind: str) -> float:
        """Signal-specific minimum when set (> 0), else the sport's, else the default."""
        signal_min = self.config.min_edge_pct_by_signal.get(kind, 0.0)
        if signal_min > 0:
            return signal_min
        return self.config.min_edge_pct_by_sport.get(sport, self.config.default_min_edge_pct)

    def odds_ceiling_for(self, sport: str, market: str) -> float:
        return self.config.odds_ceiling_overrides.get(f"{sport}:{market}", self.config.odds_ceiling)

    def size_stake(self, opp: Opportunity, bankroll: float) -> float:
        """Flat fraction of bankroll, or fractional Kelly capped at the per-bet cap."""
        if self.config.kelly_sizing:
            fraction = calculate_kelly_fraction(
                opp.fair_probability, opp.market_price, self.config.kelly_fraction
            )
            fraction = min(fraction, self.config.max_bet_fraction)
        else:
            fraction = self.config.stake_fraction
        return round(max(0.0, bankroll) * fraction, 2)

    def _check_edge_and_odds(self, opp: Opportunity) -> Optional[tuple[RejectionReason, str]]:
        min_edge = self.min_edge_for(opp.sport, opp.kind.value)
        if opp.edge_pct < min_edge:
            return RejectionReason.EDGE_TOO_LOW, f"edge {opp.edge_pct:.1f}% < {min_edge:.1f}%"

        ceiling = self.odds_ceiling_for(opp.sport, opp.market)
        if not (self.config.odds_floor <= opp.market_price <= ceiling):
            return (
                RejectionReason.ODDS_OUT_OF_RANGE,
                f"odds {opp.market_price:.2f} outside [{self.config.odds_floor:.2f}, {ceiling:.2f}]",
            )
        return None

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate(self, opp: Opportunity, now: Optional[float] = None) -> DecisionOutcome:
        """Run one opportunity through the checks and, if all pass, place the bet."""
        now = now if now is not None else time.time()
        decision = BetDecision(
            decision_id=str(uuid4()),
            opportunity=opp,
            stake=0.0,
            condition_id=opp.condition_id,
            outcome_id=opp.outcome_id,
            min_odds=opp.market_price,
            decided_at=now,
        )

        if self.halted:
            return self._reject(decision, RejectionReason.AUDIT_UNAVAILABLE, self.halt_reason)

        # 1. Edge and odds bounds
        failed = self._check_edge_and_odds(opp)
        if failed:
            return self._reject(decision, *failed)

        decision.stake = self.size_stake(opp, self.risk.state.bankroll)

        # 2-7 under one critical section, reservation committed on pass
        async with self.risk.lock:
            check = self.risk.check_and_reserve(decision, now)
        if not check.passed:
            if check.deferred:
                return self._defer(decision, check.detail)
            return self._reject(decision, check.reason, check.detail)
        decision.is_rebet = check.is_rebet

        # 8. State gate
        try:
            market = await asyncio.wait_for(
                self.executor.market_status(decision.condition_id),
                timeout=self.state_gate_timeout_seconds,
            )
        except (ExecutorError, asyncio.TimeoutError) as e:
            detail = f"state gate: {str(e) or type(e).__name__}"
            await self._release(decision)
            self._alert_executor_outage(detail)
            return self._reject(decision, RejectionReason.EXECUTOR_UNAVAILABLE, detail)
        if not market.open:
            await self._release(decision)
            return self._reject(decision, RejectionReason.MARKET_CLOSED, f"market state {market.state}")

        try:
            self.ledger.record_decision(decision, DecisionState.PROPOSED)
        except AuditLedgerError as e:
            await self._release(decision)
            self._halt(str(e))
            return self._reject(decision, RejectionReason.AUDIT_UNAVAILABLE, str(e))

        self.decisions[decision.decision_id] = decision
        return await self._submit(decision)

    async def evaluate_many(self, opportunities: list[Opportunity], now: Optional[float] = None) -> list[DecisionOutcome]:
        """Evaluate concurrently. Serialization happens inside the risk lock."""
        return list(await asyncio.gather(*(self.evaluate(o, now) for o in opportunities)))

    async def _submit(self, decision: BetDecision) -> DecisionOutcome:
        """Single executor call, then Submitted record and confirmation poll."""
        try:
            receipt = await self.executor.place_bet(decision)
        except ExecutorUnavailable as e:
            return await self._fail_before_submit(decision, RejectionReason.EXECUTOR_UNAVAILABLE, str(e), outage=True)
        except ExecutorError as e:
            return await self._fail_before_submit(decision, RejectionReason.EXECUTOR_REJECTED, str(e))

        if receipt.state == BetState.REJECTED:
            return await self._fail_before_submit(
                decision, RejectionReason.EXECUTOR_REJECTED, receipt.error or "Rejected"
            )

        decision.external_id = receipt.bet_id
        decision.state = DecisionState.SUBMITTED
        async with self.risk.lock:
            self.risk.mark_submitted(decision.decision_id, receipt.bet_id)
        self.submitted_total += 1

        try:
            self.ledger.record_decision(decision, DecisionState.SUBMITTED)
        except AuditLedgerError as e:
            # The bet is out; keep tracking it but stop placing new ones
            self._halt(str(e))

        self.scheduler.schedule(decision.decision_id, receipt.bet_id)

        self.logger.info(
            "✅ BET SUBMITTED",
            decision_id=decision.decision_id,
            bet_id=receipt.bet_id,
            state=receipt.state.value,
            match=decision.match_key,
            selection=decision.opportunity.selection,
            stake=f"{decision.stake:.2f}",
            odds=f"{decision.min_odds:.2f}",
            edge=f"{decision.opportunity.edge_pct:.1f}%",
            rebet=decision.is_rebet,
        )
        return DecisionOutcome(status="submitted", decision=decision)

    async def _fail_before_submit(
        self,
        decision: BetDecision,
        reason: RejectionReason,
        detail: str,
        outage: bool = False,
    ) -> DecisionOutcome:
        """Executor refused or was unreachable. Fail closed: no bet assumed placed."""
        await self._release(decision)
        decision.state = DecisionState.REJECTED
        decision.reason = reason
        self._write(decision.decision_id, DecisionState.REJECTED, reason=f"{reason.value}: {detail}")
        self.decisions.pop(decision.decision_id, None)
        if outage:
            self._alert_executor_outage(detail)
        elif self.alerter:
            await self.alerter.send_bet_rejected(decision, reason.value, detail)
        return self._reject(decision, reason, detail)

    async def _release(self, decision: BetDecision) -> None:
        async with self.risk.lock:
            self.risk.release(decision.decision_id)

    # =========================================================================
    # Confirmation
    # =========================================================================

    async def _on_confirmation(self, decision_id: str, state: Optional[BetState], detail: str) -> None:
        decision = self.decisions.get(decision_id)

        if state is not None and state.is_accepted:
            async with self.risk.lock:
                self.risk.mark_confirmed(decision_id)
            if decision:
                decision.state = DecisionState.CONFIRMED
            self.confirmed_total += 1
            self._write(decision_id, DecisionState.CONFIRMED)
            self.logger.info("🟢 Bet confirmed", decision_id=decision_id, state=state.value)
            return

        reason = RejectionReason.EXECUTOR_REJECTED if state == BetState.REJECTED else RejectionReason.NOT_CONFIRMED
        async with self.risk.lock:
            self.risk.mark_rejected(decision_id)
        if decision:
            decision.state = DecisionState.REJECTED
            decision.reason = reason
        self.rejected_after_submit += 1
        self._write(decision_id, DecisionState.REJECTED, reason=f"{reason.value}: {detail}")

        self.logger.warning(
            "❌ Bet not confirmed",
            decision_id=decision_id,
            reason=reason.value,
            detail=detail,
        )
        if self.alerter and decision:
            await self.alerter.send_bet_rejected(decision, reason.value, detail)
        elif self.alerter:
            await self.alerter.send_error_alert("Bet not confirmed", f"{decision_id}: {detail}")
        self.decisions.pop(decision_id, None)

    def resume_pending(self, records: list[LedgerRecord]) -> int:
        """Reschedule confirmation polls for bets left inflight by a previous run."""
        latest: dict[str, LedgerRecord] = {}
        for record in records:
            latest[record.decision_id] = record
        self._replayed = latest

        resumed = 0
        for position in self.risk.pending_confirmations():
            if position.external_id:
                self.scheduler.schedule(position.decision_id, position.external_id, delay_seconds=0.0)
                resumed += 1
        if resumed:
            self.logger.info("Resumed confirmation polls from ledger", count=resumed)
        return resumed

    # =========================================================================
    # Settlement
    # =========================================================================

    async def settle(
        self,
        decision_id: str,
        result: SettlementResult,
        payout: float = 0.0,
        now: Optional[float] = None,
    ) -> bool:
        """
        Apply a settlement from the reconciliation path. Idempotent.

        Returns:
            True if this call changed RiskState
        """
        now = now if now is not None else time.time()
        async with self.risk.lock:
            position = self.risk.position(decision_id)
            if position is None or not position.submitted or decision_id in self.risk.state.settled:
                self.logger.debug("Settlement ignored", decision_id=decision_id, result=result.value)
                return False
            self._write(decision_id, DecisionState.SETTLED, settlement=result, payout=payout)
            applied = self.risk.settle(decision_id, result, payout, now)

        self.scheduler.cancel(decision_id)
        self._write(decision_id, DecisionState.CLOSED, settlement=result)
        decision = self.decisions.pop(decision_id, None)
        if decision:
            decision.settlement = result
            decision.state = DecisionState.CLOSED
        self.settled_total += 1
        return applied

    # =========================================================================
    # Ledger
    # =========================================================================

    def _write(self, decision_id: str, transition: DecisionState, **fields) -> None:
        """Append a post-proposal transition. Failure halts decisioning."""
        try:
            decision = self.decisions.get(decision_id)
            if decision is not None:
                self.ledger.record_decision(
                    decision,
                    transition,
                    reason=fields.get("reason"),
                    settlement=fields.get("settlement"),
                    payout=fields.get("payout", 0.0),
                )
                return

            previous = self._replayed.get(decision_id)
            position = self.risk.position(decision_id)
            base = {}
            if previous is not None:
                base = {
                    "outcome_id": previous.outcome_id,
                    "match_key": previous.match_key,
                    "sport": previous.sport,
                    "stake": previous.stake,
                    "price": previous.price,
                    "edge_pct": previous.edge_pct,
                    "external_id": previous.external_id,
                }
            elif position is not None:
                base = {
                    "match_key": position.match_key,
                    "sport": position.sport,
                    "stake": position.stake,
                    "price": position.price,
                    "edge_pct": position.edge_pct,
                    "external_id": position.external_id,
                }
            condition_id = (
                previous.condition_id if previous else position.condition_id if position else ""
            )
            self.ledger.append(decision_id, transition, condition_id, **base, **fields)
        except AuditLedgerError as e:
            self._halt(str(e))

    def _halt(self, reason: str) -> None:
        if self.halted:
            return
        self.halted = True
        self.halt_reason = reason
        self.logger.critical("🛑 DECISIONING HALTED: audit ledger unavailable", error=reason)
        if self.alerter:
            try:
                asyncio.get_running_loop().create_task(
                    self.alerter.send_error_alert("Audit ledger unavailable", "Auto-betting halted", reason)
                )
            except RuntimeError:
                pass

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _reject(self, decision: BetDecision, reason: RejectionReason, detail: str = "") -> DecisionOutcome:
        decision.reason = reason
        if decision.state == DecisionState.PROPOSED:
            decision.state = DecisionState.REJECTED
        self._track_rejection(reason.value)

        opp = decision.opportunity
        self.logger.debug(
            "Decision rejected",
            reason=reason.value,
            detail=detail,
            match=str(opp.key),
            kind=opp.kind.value,
            edge=f"{opp.edge_pct:.1f}%",
        )
        if reason in _ALERTABLE_REASONS:
            self._alert_not_acted(opp, f"{reason.value}: {detail}")
        return DecisionOutcome(status="rejected", reason=reason, detail=detail, decision=decision)

    def _defer(self, decision: BetDecision, detail: str) -> DecisionOutcome:
        self.deferred_total += 1
        self._track_rejection("deferred")
        self.logger.debug("Decision deferred", detail=detail, match=decision.match_key)
        return DecisionOutcome(
            status="deferred", reason=RejectionReason.INFLIGHT_CAP, detail=detail, decision=decision
        )

    def _alert_not_acted(self, opp: Opportunity, note: str) -> None:
        if not self.alerter:
            return
        if opp.edge_pct < self.alert_min_edge_pct or opp.tier == ConfidenceTier.LOW:
            return
        try:
            asyncio.get_running_loop().create_task(self.alerter.send_opportunity_alert(opp, note))
        except RuntimeError:
            pass

    def _alert_executor_outage(self, detail: str) -> None:
        self.logger.error("🔌 Executor unavailable", detail=detail)
        if not self.alerter:
            return
        try:
            asyncio.get_running_loop().create_task(
                self.alerter.send_error_alert("Executor unavailable", detail)
            )
        except RuntimeError:
            pass

    async def stop(self) -> None:
        await self.scheduler.stop()

    # =========================================================================
    # Metrics
    # =========================================================================

    def _track_rejection(self, reason: str) -> None:
        """Track rejection for metrics."""
        self._rejection_counts[reason] = self._rejection_counts.get(reason, 0) + 1

        now_ms = int(time.time() * 1000)
        if now_ms - self._last_rejection_log_ms > 60_000:
            self._last_rejection_log_ms = now_ms
            self.logger.info(
                "Decision rejections",
                rejections=dict(self._rejection_counts),
            )

    def get_metrics(self) -> dict:
        return {
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "submitted_total": self.submitted_total,
            "confirmed_total": self.confirmed_total,
            "rejected_after_submit": self.rejected_after_submit,
            "deferred_total": self.deferred_total,
            "settled_total": self.settled_total,
            "open_decisions": len(self.decisions),
            "rejection_counts": dict(self._rejection_counts),
            "confirmation": self.scheduler.get_metrics(),
        }
