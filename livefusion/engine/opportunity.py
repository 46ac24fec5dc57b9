"""
Opportunity Engine.

Joins fused live state with fresh market quotes and emits scored
opportunities of two kinds:

    score_momentum  the sport model's fair probability for the leading side
                    vs. the best fresh market price for that side
    odds_anomaly    one source's price diverges from the consensus of the
                    other independent sources for the same market

Edge% = fair probability - market implied probability, in percentage
points, rounded. Nothing below the minimum edge is emitted.
"""

import time
from collections import defaultdict
from typing import Optional
from uuid import uuid4

import structlog

from config.settings import OpportunitySettings
from livefusion.engine.sport_models import fair_probability
from livefusion.fusion.state_store import SourceStateStore
from livefusion.models.schemas import (
    ConfidenceTier,
    FusedMatchState,
    OddsQuote,
    Opportunity,
    SignalKind,
    decimal_to_probability,
    remove_vig,
)

logger = structlog.get_logger()

# Markets the sport models price (match result, two-way)
MATCH_WINNER_MARKETS = frozenset({"match_winner", "h2h", "moneyline", "winner"})

# Anomaly confidence penalties
PENALTY_SWAPPED = 1
PENALTY_EXTREME_ODDS = 2
PENALTY_SUSPICIOUS_DIVERGENCE = 2
PENALTY_FAVOURITE_FLIP = 4
PENALTY_ODDS_OUT_OF_RANGE = 1
PENALTY_MIRRORED = 1
BONUS_MULTI_SOURCE = 1

EXTREME_ODDS = 8.0
NORMAL_ODDS_RANGE = (1.15, 5.0)

TIER_CONFIDENCE = {
    ConfidenceTier.HIGH: 0.9,
    ConfidenceTier.MEDIUM: 0.7,
    ConfidenceTier.LOW: 0.4,
}


def confidence_tier(penalty: int) -> ConfidenceTier:
    if penalty <= 0:
        return ConfidenceTier.HIGH
    if penalty <= 2:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


class OpportunityEngine:
    """Evaluates fused state into opportunities."""

    def __init__(self, store: SourceStateStore, config: Optional[OpportunitySettings] = None):
        self.store = store
        self.config = config or OpportunitySettings()
        self.logger = logger.bind(component="opportunity_engine")

        self._current: list[Opportunity] = []
        self._last_evaluated_at: float = 0.0

        # Rejection tracking
        self._rejection_counts: dict[str, int] = {}
        self._last_rejection_log_ms: int = 0
        self._emitted_total = 0
        self._evaluations = 0

    # =========================================================================
    # Core Evaluation
    # =========================================================================

    def evaluate(self, now: Optional[float] = None) -> list[Opportunity]:
        """Evaluate every match in the store. Replaces the current set."""
        now = now if now is not None else time.time()
        opportunities: list[Opportunity] = []
        for state in self.store.snapshots(now):
            opportunities.extend(self.evaluate_state(state, now))

        opportunities.sort(key=lambda o: (o.tier != ConfidenceTier.HIGH, -o.edge_pct))
        self._current = opportunities
        self._last_evaluated_at = now
        self._evaluations += 1
        self._emitted_total += len(opportunities)
        return opportunities

    def evaluate_state(self, state: FusedMatchState, now: Optional[float] = None) -> list[Opportunity]:
        """Opportunities for one fused match state."""
        now = now if now is not None else time.time()
        quotes = state.fresh_quotes(self.config.max_odds_age_seconds, now)
        if not quotes:
            if state.quotes:
                self._track_rejection("odds_stale")
            return []

        by_market: dict[str, list[OddsQuote]] = defaultdict(list)
        for quote in quotes:
            by_market[quote.market].append(quote)

        opportunities: list[Opportunity] = []
        momentum = self._score_momentum(state, by_market, now)
        if momentum is not None:
            opportunities.append(momentum)

        for market, market_quotes in by_market.items():
            opportunities.extend(self._odds_anomalies(state, market, market_quotes, now))

        for opp in opportunities:
            self.logger.info("🎯 OPPORTUNITY DETECTED", **opp.to_log())
        return opportunities

    def current(self, max_age_seconds: Optional[float] = None, now: Optional[float] = None) -> list[Opportunity]:
        """Last evaluated set, optionally only if recent enough."""
        if max_age_seconds is not None:
            now = now if now is not None else time.time()
            if now - self._last_evaluated_at > max_age_seconds:
                return []
        return list(self._current)

    # =========================================================================
    # Score momentum
    # =========================================================================

    def _score_momentum(
        self,
        state: FusedMatchState,
        by_market: dict[str, list[OddsQuote]],
        now: float,
    ) -> Optional[Opportunity]:
        if not state.is_live:
            self._track_rejection("not_live")
            return None
        if state.score is None:
            self._track_rejection("no_detailed_score")
            return None

        fair = fair_probability(state.sport, state.score)
        if not fair.has_opinion or fair.confidence < self.config.min_model_confidence:
            self._track_rejection("model_no_opinion")
            return None

        side = fair.leader
        candidates = [
            q for market, qs in by_market.items() if market in MATCH_WINNER_MARKETS for q in qs
        ]
        if not candidates:
            self._track_rejection("no_match_winner_quote")
            return None

        best = max(candidates, key=lambda q: q.price_for(side))
        price = best.price_for(side)
        implied = decimal_to_probability(price)
        edge = round((fair.probability - implied) * 100, self.config.edge_decimals)

        if edge < self.config.min_edge_pct:
            self._track_rejection("edge_low")
            return None

        return Opportunity(
            opportunity_id=str(uuid4()),
            key=state.key,
            sport=state.sport,
            kind=SignalKind.SCORE_MOMENTUM,
            side=side,
            selection=state.key.team1 if side == 1 else state.key.team2,
            fair_probability=fair.probability,
            market_price=price,
            implied_probability=implied,
            edge_pct=edge,
            source_count=len({q.source for q in candidates}),
            generated_at=now,
            source=best.source,
            bookmaker=best.bookmaker,
            market=best.market,
            condition_id=best.condition,
            outcome_id=best.outcome_for(side),
            confidence=fair.confidence,
            reasons=[f"score {state.score1}-{state.score2}", f"model {fair.probability:.0%}"],
        )

    # =========================================================================
    # Odds anomaly
    # =========================================================================

    def _odds_anomalies(
        self,
        state: FusedMatchState,
        market: str,
        quotes: list[OddsQuote],
        now: float,
    ) -> list[Opportunity]:
        # Identical prices from several sources are one mirrored feed
        groups: dict[tuple[float, float], list[OddsQuote]] = defaultdict(list)
        for q in sorted(quotes, key=lambda q: q.source):
            groups[(round(q.price1, 3), round(q.price2, 3))].append(q)

        if len(groups) < self.config.min_independent_sources:
            self._track_rejection("anomaly_sources_low")
            return []

        opportunities = []
        for prices, members in groups.items():
            quote = members[0]
            others = [g[0] for p, g in groups.items() if p != prices]
            avg1 = sum(o.price1 for o in others) / len(others)
            avg2 = sum(o.price2 for o in others) / len(others)
            fair1, fair2 = remove_vig([decimal_to_probability(avg1), decimal_to_probability(avg2)])

            for side, avg, fair in ((1, avg1, fair1), (2, avg2, fair2)):
                price = quote.price_for(side)
                divergence = (price / avg - 1.0) * 100
                if divergence < self.config.min_divergence_pct:
                    continue
                if divergence > self.config.max_divergence_pct:
                    self._track_rejection("anomaly_divergence_implausible")
                    continue

                implied = decimal_to_probability(price)
                edge = round((fair - implied) * 100, self.config.edge_decimals)
                if edge < self.config.min_edge_pct:
                    self._track_rejection("edge_low")
                    continue

                penalty, reasons = self._anomaly_penalty(quote, members, others, avg1, avg2, divergence)
                tier = confidence_tier(penalty)
                if tier == ConfidenceTier.LOW:
                    self._track_rejection("anomaly_low_confidence")
                    continue

                opportunities.append(Opportunity(
                    opportunity_id=str(uuid4()),
                    key=state.key,
                    sport=state.sport,
                    kind=SignalKind.ODDS_ANOMALY,
                    side=side,
                    selection=state.key.team1 if side == 1 else state.key.team2,
                    fair_probability=fair,
                    market_price=price,
                    implied_probability=implied,
                    edge_pct=edge,
                    source_count=len(groups),
                    generated_at=now,
                    source=quote.source,
                    bookmaker=quote.bookmaker,
                    market=market,
                    condition_id=quote.condition,
                    outcome_id=quote.outcome_for(side),
                    confidence=TIER_CONFIDENCE[tier],
                    tier=tier,
                    reasons=[f"divergence {divergence:.1f}%"] + reasons,
                ))
        return opportunities

    def _anomaly_penalty(
        self,
        quote: OddsQuote,
        members: list[OddsQuote],
        others: list[OddsQuote],
        avg1: float,
        avg2: float,
        divergence: float,
    ) -> tuple[int, list[str]]:
        penalty = 0
        reasons: list[str] = []

        if any(o.swapped != quote.swapped for o in others):
            penalty += PENALTY_SWAPPED
            reasons.append("team order swapped between sources")

        if max(quote.price1, quote.price2) > EXTREME_ODDS:
            penalty += PENALTY_EXTREME_ODDS
            reasons.append("extreme odds, match likely decided")

        if divergence > self.config.suspicious_divergence_pct:
            penalty += PENALTY_SUSPICIOUS_DIVERGENCE
            reasons.append("suspiciously high divergence")

        if (quote.price1 < quote.price2) != (avg1 < avg2):
            penalty += PENALTY_FAVOURITE_FLIP
            reasons.append("favourite flipped vs consensus")

        low, high = NORMAL_ODDS_RANGE
        if not (low < quote.price1 < high and low < quote.price2 < high):
            penalty += PENALTY_ODDS_OUT_OF_RANGE
            reasons.append("odds outside normal range")

        if len(members) > 1:
            penalty += PENALTY_MIRRORED
            reasons.append("price mirrored by another source")

        if len(others) >= 2:
            penalty -= BONUS_MULTI_SOURCE
            reasons.append(f"{len(others)} sources agree")

        return penalty, reasons

    # =========================================================================
    # Metrics
    # =========================================================================

    def _track_rejection(self, reason: str) -> None:
        """Track rejection for metrics."""
        self._rejection_counts[reason] = self._rejection_counts.get(reason, 0) + 1

        now_ms = int(time.time() * 1000)
        if now_ms - self._last_rejection_log_ms > 60_000:
            self._last_rejection_log_ms = now_ms
            self.logger.debug(
                "Opportunity rejections",
                rejections=dict(self._rejection_counts),
            )

    def get_metrics(self) -> dict:
        return {
            "current": len(self._current),
            "emitted_total": self._emitted_total,
            "evaluations": self._evaluations,
            "min_edge_pct": self.config.min_edge_pct,
            "max_odds_age_seconds": self.config.max_odds_age_seconds,
            "rejection_counts": dict(self._rejection_counts),
        }
