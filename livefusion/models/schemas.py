"""
Live fusion data models and schemas.

Defines the core data structures for:
- Feed envelopes and payloads (wire format, validated with pydantic)
- Match identity (MatchKey) and fused per-match state
- Sport-specific detailed scores
- Odds quotes, opportunities and bet decisions
- Audit ledger records
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional, Union
import time

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class Sport(str, Enum):
    """Canonical sports with a fair-probability model."""
    TENNIS = "tennis"
    FOOTBALL = "football"
    BASKETBALL = "basketball"
    CS2 = "cs2"
    VALORANT = "valorant"
    LOL = "lol"
    DOTA2 = "dota2"

    @classmethod
    def from_string(cls, value: str) -> Optional["Sport"]:
        """Convert canonical sport string to Sport enum."""
        value_lower = (value or "").lower()
        for sport in cls:
            if sport.value == value_lower or sport.name.lower() == value_lower:
                return sport
        return None

    @property
    def is_esports(self) -> bool:
        return self in (Sport.CS2, Sport.VALORANT, Sport.LOL, Sport.DOTA2)


class FeedMessageType(str, Enum):
    """Feed envelope message types."""
    LIVE_MATCH = "live_match"
    ODDS = "odds"
    HEARTBEAT = "heartbeat"


class ObservationKind(str, Enum):
    LIVE_SCORE = "live_score"
    ODDS_QUOTE = "odds_quote"


class SignalKind(str, Enum):
    """Opportunity signal types."""
    SCORE_MOMENTUM = "score_momentum"
    ODDS_ANOMALY = "odds_anomaly"


class ConfidenceTier(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DecisionState(str, Enum):
    """Bet decision lifecycle."""
    PROPOSED = "proposed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    SETTLED = "settled"
    CLOSED = "closed"


class SettlementResult(str, Enum):
    WON = "won"
    LOST = "lost"
    CANCELED = "canceled"


class RejectionReason(str, Enum):
    """Named reasons a decision does not reach Submitted (or later fails)."""
    EDGE_TOO_LOW = "edge below minimum"
    ODDS_OUT_OF_RANGE = "odds out of range"
    DUPLICATE_CONDITION = "duplicate condition"
    INFLIGHT_CAP = "inflight cap"
    EXPOSURE_CAP = "exposure cap"
    DAILY_LOSS_LIMIT = "daily loss limit"
    LOSS_STREAK_COOLDOWN = "loss streak cooldown"
    BANKROLL_FLOOR = "bankroll floor"
    MARKET_CLOSED = "market closed"
    STAKE_TOO_SMALL = "stake below minimum"
    EXECUTOR_REJECTED = "executor rejected"
    EXECUTOR_UNAVAILABLE = "executor unavailable"
    NOT_CONFIRMED = "not confirmed"
    AUDIT_UNAVAILABLE = "audit unavailable"


# =============================================================================
# Wire format (feed hub envelopes)
# =============================================================================

class FeedEnvelope(BaseModel):
    """Envelope every feed producer sends: {v, type, source, ts, payload}."""
    v: int
    type: FeedMessageType
    source: str = Field(min_length=1)
    ts: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class LiveMatchPayload(BaseModel):
    """Live score payload. Headline score plus optional sport detail."""
    sport: str = Field(min_length=1)
    team1: str = Field(min_length=1)
    team2: str = Field(min_length=1)
    league: Optional[str] = None
    score1: Optional[int] = None
    score2: Optional[int] = None
    status: Optional[str] = None

    # Sport detail
    minute: Optional[int] = None          # football
    period: Optional[str] = None          # football: 1h / ht / 2h / et / pen
    quarter: Optional[int] = None         # basketball
    clock_seconds: Optional[int] = None   # basketball: seconds left in quarter
    best_of: Optional[int] = None         # tennis sets / esports maps
    sub_score1: Optional[int] = None      # games in set / rounds on map
    sub_score2: Optional[int] = None
    point1: Optional[str] = None          # tennis point: 0/15/30/40/AD
    point2: Optional[str] = None
    server: Optional[int] = None          # tennis: 1 or 2

    url: Optional[str] = None

    @field_validator("team1", "team2", "sport")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("blank")
        return v


class OddsPayload(BaseModel):
    """Two-way market quote from one bookmaker."""
    sport: str = Field(min_length=1)
    bookmaker: str = Field(min_length=1)
    market: str = "match_winner"
    team1: str = Field(min_length=1)
    team2: str = Field(min_length=1)
    odds_team1: float
    odds_team2: float
    liquidity_usd: Optional[float] = None
    spread_pct: Optional[float] = None
    condition_id: Optional[str] = None
    outcome1_id: Optional[str] = None
    outcome2_id: Optional[str] = None
    url: Optional[str] = None

    @field_validator("odds_team1", "odds_team2")
    @classmethod
    def _decimal_odds(cls, v: float) -> float:
        # Decimal odds must exceed 1.0; also rejects NaN
        if not v > 1.0 or v == float("inf"):
            raise ValueError("decimal odds must be > 1.0")
        return v

    @field_validator("team1", "team2", "sport", "bookmaker")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("blank")
        return v


# =============================================================================
# Observations and match identity
# =============================================================================

@dataclass(frozen=True)
class RawObservation:
    """One inbound message, before normalization. Discarded afterwards."""
    source: str
    kind: ObservationKind
    sport: str
    team1: str
    team2: str
    observed_at: float
    league: Optional[str] = None
    live: Optional[LiveMatchPayload] = None
    odds: Optional[OddsPayload] = None


@dataclass(frozen=True, order=True)
class MatchKey:
    """
    Canonical match identity: sport + sorted normalized team pair.

    Either team ordering builds the same key.
    """
    sport: str
    team1: str
    team2: str

    @classmethod
    def build(cls, sport: str, name_a: str, name_b: str) -> "MatchKey":
        first, second = sorted((name_a, name_b))
        return cls(sport=sport, team1=first, team2=second)

    def __str__(self) -> str:
        return f"{self.sport}::{self.team1}_vs_{self.team2}"


@dataclass(frozen=True)
class ResolvedKey:
    """Resolver output: the key plus whether raw team1 maps to key.team2."""
    key: MatchKey
    swapped: bool = False
    method: str = "exact"


# =============================================================================
# Detailed scores (shape depends on sport)
# =============================================================================

@dataclass(frozen=True)
class TennisScore:
    sets1: int = 0
    sets2: int = 0
    games1: int = 0
    games2: int = 0
    point1: str = "0"
    point2: str = "0"
    server: Optional[int] = None
    best_of: int = 3


@dataclass(frozen=True)
class FootballScore:
    goals1: int = 0
    goals2: int = 0
    minute: int = 0
    period: str = "1h"


@dataclass(frozen=True)
class BasketballScore:
    points1: int = 0
    points2: int = 0
    quarter: int = 1
    clock_seconds: Optional[int] = None


@dataclass(frozen=True)
class EsportsScore:
    maps1: int = 0
    maps2: int = 0
    best_of: int = 3
    rounds1: int = 0
    rounds2: int = 0
    game: str = "cs2"


DetailedScore = Union[TennisScore, FootballScore, BasketballScore, EsportsScore]


def swap_score(score: Optional[DetailedScore]) -> Optional[DetailedScore]:
    """Mirror a detailed score so side 1 becomes side 2."""
    if score is None:
        return None
    if isinstance(score, TennisScore):
        server = {1: 2, 2: 1}.get(score.server) if score.server else None
        return TennisScore(
            sets1=score.sets2, sets2=score.sets1,
            games1=score.games2, games2=score.games1,
            point1=score.point2, point2=score.point1,
            server=server, best_of=score.best_of,
        )
    if isinstance(score, FootballScore):
        return FootballScore(score.goals2, score.goals1, score.minute, score.period)
    if isinstance(score, BasketballScore):
        return BasketballScore(score.points2, score.points1, score.quarter, score.clock_seconds)
    if isinstance(score, EsportsScore):
        return EsportsScore(
            maps1=score.maps2, maps2=score.maps1, best_of=score.best_of,
            rounds1=score.rounds2, rounds2=score.rounds1, game=score.game,
        )
    return score


# =============================================================================
# Quotes and fused state
# =============================================================================

@dataclass(frozen=True)
class OddsQuote:
    """
    One source's quote for a two-way market, oriented to MatchKey order.

    price1 is always the price for key.team1, whatever order the source
    listed the teams in.
    """
    key: MatchKey
    source: str
    bookmaker: str
    market: str
    price1: float
    price2: float
    observed_at: float
    condition_id: Optional[str] = None
    outcome1_id: Optional[str] = None
    outcome2_id: Optional[str] = None
    liquidity_usd: Optional[float] = None
    spread_pct: Optional[float] = None
    swapped: bool = False
    gated: bool = False
    gate_reason: str = ""

    def price_for(self, side: int) -> float:
        return self.price1 if side == 1 else self.price2

    def outcome_for(self, side: int) -> str:
        outcome = self.outcome1_id if side == 1 else self.outcome2_id
        return outcome or f"{self.condition}:{side}"

    @property
    def condition(self) -> str:
        """Underlying market identifier (dedup/exposure scope)."""
        if self.condition_id:
            return self.condition_id
        return f"{self.key}:{self.bookmaker}:{self.market}"

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.observed_at


@dataclass(frozen=True)
class LiveObservation:
    """Normalized live-score observation from one source."""
    score: Optional[DetailedScore]
    score1: Optional[int]
    score2: Optional[int]
    status: str
    is_live: bool
    observed_at: float
    team1_display: str = ""
    team2_display: str = ""


@dataclass
class FusedMatchState:
    """Best-known live situation for one MatchKey (snapshot copy for readers)."""
    key: MatchKey
    sport: str
    score: Optional[DetailedScore] = None
    score1: Optional[int] = None
    score2: Optional[int] = None
    status: str = ""
    is_live: bool = False
    score_source: str = ""
    team1_display: str = ""
    team2_display: str = ""
    source_updates: dict[str, float] = field(default_factory=dict)
    live_signals: dict[str, float] = field(default_factory=dict)
    quotes: dict[tuple[str, str], OddsQuote] = field(default_factory=dict)

    @property
    def has_live_state(self) -> bool:
        return bool(self.score_source)

    @property
    def last_update(self) -> float:
        return max(self.source_updates.values(), default=0.0)

    def fresh_quotes(self, max_age_seconds: float, now: Optional[float] = None) -> list[OddsQuote]:
        now = now if now is not None else time.time()
        return [q for q in self.quotes.values() if q.age_seconds(now) <= max_age_seconds]


# =============================================================================
# Opportunities and decisions
# =============================================================================

@dataclass
class Opportunity:
    """A scored mispricing. Recomputed every evaluation cycle."""
    opportunity_id: str
    key: MatchKey
    sport: str
    kind: SignalKind
    side: int
    selection: str
    fair_probability: float
    market_price: float
    implied_probability: float
    edge_pct: float
    source_count: int
    generated_at: float
    source: str
    bookmaker: str
    market: str
    condition_id: str
    outcome_id: str
    confidence: float = 0.0
    tier: Optional[ConfidenceTier] = None
    reasons: list[str] = field(default_factory=list)

    def to_log(self) -> dict:
        """Convert to loggable dict."""
        return {
            "opportunity_id": self.opportunity_id,
            "match_key": str(self.key),
            "sport": self.sport,
            "kind": self.kind.value,
            "side": self.side,
            "selection": self.selection,
            "fair_prob": round(self.fair_probability, 4),
            "market_price": self.market_price,
            "implied_prob": round(self.implied_probability, 4),
            "edge_pct": self.edge_pct,
            "sources": self.source_count,
            "bookmaker": self.bookmaker,
            "market": self.market,
            "condition_id": self.condition_id,
            "outcome_id": self.outcome_id,
            "confidence": round(self.confidence, 3),
            "tier": self.tier.value if self.tier else None,
            "reasons": list(self.reasons),
            "generated_at": self.generated_at,
        }


@dataclass
class BetDecision:
    """A single auto-bet attempt and its lifecycle state."""
    decision_id: str
    opportunity: Opportunity
    stake: float
    condition_id: str
    outcome_id: str
    min_odds: float
    decided_at: float
    state: DecisionState = DecisionState.PROPOSED
    external_id: Optional[str] = None
    reason: Optional[RejectionReason] = None
    settlement: Optional[SettlementResult] = None
    is_rebet: bool = False

    @property
    def match_key(self) -> str:
        return str(self.opportunity.key)

    @property
    def sport(self) -> str:
        return self.opportunity.sport


@dataclass
class DecisionOutcome:
    """Result of evaluating one opportunity."""
    status: str  # "submitted" | "rejected" | "deferred"
    reason: Optional[RejectionReason] = None
    detail: str = ""
    decision: Optional[BetDecision] = None

    @property
    def submitted(self) -> bool:
        return self.status == "submitted"

    @property
    def rejected(self) -> bool:
        return self.status == "rejected"

    @property
    def deferred(self) -> bool:
        return self.status == "deferred"


@dataclass(frozen=True)
class LedgerRecord:
    """Immutable audit record, one per decision state transition."""
    seq: int
    ts: float
    decision_id: str
    transition: DecisionState
    condition_id: str
    outcome_id: str = ""
    match_key: str = ""
    sport: str = ""
    stake: float = 0.0
    price: float = 0.0
    edge_pct: float = 0.0
    reason: Optional[str] = None
    external_id: Optional[str] = None
    settlement: Optional[SettlementResult] = None
    payout: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["transition"] = self.transition.value
        data["settlement"] = self.settlement.value if self.settlement else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerRecord":
        values = dict(data)
        values["transition"] = DecisionState(values["transition"])
        if values.get("settlement"):
            values["settlement"] = SettlementResult(values["settlement"])
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in values.items() if k in known})


# =============================================================================
# Utility Functions
# =============================================================================

def decimal_to_probability(decimal: float) -> float:
    """Convert Decimal odds to implied probability."""
    if decimal <= 0:
        return 0.0
    return 1 / decimal


def remove_vig(probs: list[float]) -> list[float]:
    """Normalize implied probabilities so they sum to 1."""
    total = sum(probs)
    if total <= 0:
        return probs
    return [p / total for p in probs]


def calculate_kelly_fraction(
    win_prob: float,
    odds_decimal: float,
    fraction: float = 0.25,  # Quarter Kelly for safety
) -> float:
    """
    Calculate Kelly Criterion bet size.

    Args:
        win_prob: Estimated probability of winning
        odds_decimal: Decimal odds offered
        fraction: Kelly fraction (0.25 = quarter Kelly)

    Returns:
        Recommended bet as fraction of bankroll
    """
    # Kelly: f = (bp - q) / b
    b = odds_decimal - 1
    p = win_prob
    q = 1 - p

    kelly = (b * p - q) / b if b > 0 else 0

    return max(0, min(fraction, kelly * fraction))
