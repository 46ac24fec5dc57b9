"""
Sport fair-probability models.

Simple, auditable, table-driven heuristics mapping a live situation to the
probability that the currently-leading side wins the match. One variant of
the closed SportModel enum per supported sport family; every variant shares
the same fair_probability() contract:

    - total: any input (malformed, zero, negative, wrong shape) returns a
      result instead of raising
    - bounded: probability is clamped to [PROB_MIN, PROB_MAX], inside (0, 1)
    - unknown or missing detail yields NO_OPINION (confidence 0)
"""

import math
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from livefusion.models.schemas import (
    BasketballScore,
    EsportsScore,
    FootballScore,
    TennisScore,
)

PROB_MIN = 0.01
PROB_MAX = 0.99


@dataclass(frozen=True)
class FairProbability:
    """Model output. `leader` is 1 or 2, or None when nobody leads."""
    probability: float
    confidence: float
    leader: Optional[int] = None

    @property
    def has_opinion(self) -> bool:
        return self.leader is not None and self.confidence > 0

    def clamped(self) -> "FairProbability":
        prob = self.probability
        if not isinstance(prob, (int, float)) or math.isnan(prob):
            return NO_OPINION
        conf = self.confidence if not math.isnan(self.confidence) else 0.0
        return FairProbability(
            probability=min(PROB_MAX, max(PROB_MIN, float(prob))),
            confidence=min(1.0, max(0.0, float(conf))),
            leader=self.leader,
        )


NO_OPINION = FairProbability(probability=0.5, confidence=0.0, leader=None)


def _count(value: Any) -> int:
    """Coerce a score field to a non-negative int (garbage -> 0)."""
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(number, 10_000))


def _oriented(prob_side1: float, confidence: float) -> FairProbability:
    """Express a side-1 probability from the leading side's point of view."""
    if prob_side1 > 0.5:
        return FairProbability(prob_side1, confidence, leader=1)
    if prob_side1 < 0.5:
        return FairProbability(1.0 - prob_side1, confidence, leader=2)
    return NO_OPINION


# =============================================================================
# Tennis
# =============================================================================

# (sets the leader still needs, sets the trailer still needs) -> P(leader)
TENNIS_SET_TABLE = {
    (1, 2): 0.72,   # 1-0 in best of 3, 2-1 in best of 5
    (1, 3): 0.88,   # 2-0 in best of 5
    (2, 3): 0.65,   # 1-0 in best of 5
}
TENNIS_GAME_STEP = 0.03
TENNIS_BREAK_BONUS = 0.05
_TENNIS_POINTS = {"0": 0, "15": 1, "30": 2, "40": 3, "ad": 4, "a": 4}


def _tennis_point(value: Any) -> int:
    return _TENNIS_POINTS.get(str(value).strip().lower(), 0)


def _tennis(score: TennisScore) -> FairProbability:
    best_of = _count(score.best_of)
    if best_of not in (3, 5):
        best_of = 3
    sets_to_win = best_of // 2 + 1

    sets = (min(_count(score.sets1), sets_to_win), min(_count(score.sets2), sets_to_win))
    games = (_count(score.games1), _count(score.games2))
    points = (_tennis_point(score.point1), _tennis_point(score.point2))
    server = score.server if score.server in (1, 2) else None

    if sets[0] == sets_to_win or sets[1] == sets_to_win:
        winner = 1 if sets[0] == sets_to_win else 2
        return FairProbability(PROB_MAX, 1.0, leader=winner)

    set_diff = sets[0] - sets[1]
    game_diff = games[0] - games[1]
    if set_diff != 0:
        leader = 1 if set_diff > 0 else 2
    elif game_diff != 0:
        leader = 1 if game_diff > 0 else 2
    else:
        return NO_OPINION

    li, ti = (0, 1) if leader == 1 else (1, 0)
    trailer = 3 - leader
    game_lead = games[li] - games[ti]
    break_up = game_lead >= 2 or (game_lead == 1 and server == trailer)

    if set_diff == 0:
        prob = 0.5 + TENNIS_GAME_STEP * game_lead + (TENNIS_BREAK_BONUS if break_up else 0.0)
        confidence = 0.4 + (0.1 if break_up else 0.0)
        return FairProbability(min(prob, 0.75), confidence, leader)

    needs = (sets_to_win - sets[li], sets_to_win - sets[ti])
    prob = TENNIS_SET_TABLE.get(needs, 0.5 + 0.1 * abs(set_diff))
    prob += TENNIS_GAME_STEP * game_lead
    if break_up:
        prob += TENNIS_BREAK_BONUS

    confidence = 0.5 + 0.15 * abs(set_diff) + (0.1 if break_up else 0.0)

    # Serving for / at match point
    if needs[0] == 1 and games[li] >= 5 and game_lead >= 1:
        prob = max(prob, 0.93)
        if points[li] >= 3 and points[li] > points[ti]:
            prob = max(prob, 0.97)
            confidence = 0.95

    return FairProbability(prob, confidence, leader)


# =============================================================================
# Football
# =============================================================================

FOOTBALL_MINUTE_BUCKETS = [15, 30, 45, 60, 75, 85]
# goal lead -> P(leader wins) per minute bucket (last column: 85+)
FOOTBALL_LEAD_TABLE = {
    1: [0.60, 0.63, 0.66, 0.70, 0.78, 0.86, 0.93],
    2: [0.80, 0.83, 0.86, 0.89, 0.93, 0.96, 0.98],
    3: [0.92, 0.94, 0.95, 0.97, 0.98, 0.99, 0.99],
}
FOOTBALL_EXTRA_TIME_BUCKETS = [105, 115]
FOOTBALL_EXTRA_TIME_TABLE = {
    1: [0.88, 0.93, 0.97],
    2: [0.97, 0.98, 0.99],
}


def _football(score: FootballScore) -> FairProbability:
    goals = (_count(score.goals1), _count(score.goals2))
    period = str(score.period or "").strip().lower()
    minute = _count(score.minute)

    if period in ("pen", "penalties"):
        return NO_OPINION

    diff = goals[0] - goals[1]
    if diff == 0:
        return NO_OPINION
    leader = 1 if diff > 0 else 2
    lead = min(abs(diff), 3)

    if period in ("et", "extra_time", "aet"):
        row = FOOTBALL_EXTRA_TIME_TABLE[min(lead, 2)]
        prob = row[bisect_right(FOOTBALL_EXTRA_TIME_BUCKETS, max(minute, 90))]
        return FairProbability(prob, 0.9, leader)

    # Half-time: the clock stops at 45 whatever the feed says
    if period in ("ht", "half_time"):
        minute = 45
    elif period in ("2h", "second_half"):
        minute = max(minute, 45)
    minute = min(minute, 90)

    row = FOOTBALL_LEAD_TABLE[lead]
    prob = row[bisect_right(FOOTBALL_MINUTE_BUCKETS, minute - 1) if minute > 0 else 0]
    confidence = 0.5 + minute / 180 + 0.1 * (lead - 1)
    return FairProbability(prob, confidence, leader)


# =============================================================================
# Basketball
# =============================================================================

BASKETBALL_QUARTER_SECONDS = 12 * 60
BASKETBALL_OVERTIME_SECONDS = 5 * 60
BASKETBALL_SCALE = 0.9


def _basketball(score: BasketballScore) -> FairProbability:
    points = (_count(score.points1), _count(score.points2))
    quarter = max(1, _count(score.quarter))

    if quarter <= 4:
        period_seconds = BASKETBALL_QUARTER_SECONDS
        quarters_after = 4 - quarter
    else:
        period_seconds = BASKETBALL_OVERTIME_SECONDS
        quarters_after = 0

    if score.clock_seconds is None:
        clock = period_seconds // 2
    else:
        clock = min(_count(score.clock_seconds), period_seconds)

    remaining_min = (quarters_after * BASKETBALL_QUARTER_SECONDS + clock) / 60
    diff = points[0] - points[1]
    if diff == 0:
        return NO_OPINION

    z = diff / math.sqrt(remaining_min + 1.0)
    prob_side1 = 1.0 / (1.0 + math.exp(-BASKETBALL_SCALE * z))
    confidence = 0.3 + 0.7 * (1.0 - min(remaining_min, 48.0) / 48.0)
    return _oriented(prob_side1, confidence)


# =============================================================================
# Esports (map based)
# =============================================================================

@dataclass(frozen=True)
class RoundRules:
    """Intra-map round heuristics for one title."""
    rounds_to_win: int
    match_point_max_trail: int
    match_point_prob: float
    big_lead_min_rounds: int
    big_lead_min_diff: int
    big_lead_prob: float


ROUND_RULES = {
    "cs2": RoundRules(13, 10, 0.95, 11, 5, 0.85),
    "valorant": RoundRules(13, 9, 0.98, 10, 4, 0.88),
}


def _map_probability(rounds1: int, rounds2: int, rules: Optional[RoundRules]) -> float:
    """P(side 1 wins the current map) from the round score."""
    if rules is None or rounds1 == rounds2:
        return 0.5

    lead_rounds, trail_rounds = max(rounds1, rounds2), min(rounds1, rounds2)
    diff = lead_rounds - trail_rounds
    rtw = rules.rounds_to_win

    if lead_rounds >= rtw and diff >= 2:
        p = 1.0
    elif lead_rounds == rtw - 1 and trail_rounds <= rules.match_point_max_trail:
        p = rules.match_point_prob
    elif lead_rounds == rtw - 1 and diff >= 2:
        p = 0.90
    elif lead_rounds >= rules.big_lead_min_rounds and diff >= rules.big_lead_min_diff:
        p = rules.big_lead_prob
    else:
        progress = min(lead_rounds / rtw, 1.0)
        p = min(0.5 + 0.03 * diff * (0.5 + progress), 0.80)

    return p if rounds1 > rounds2 else 1.0 - p


def series_probability(maps1: int, maps2: int, maps_needed: int, current_map: float) -> float:
    """P(side 1 wins the series): current map at current_map, later maps 50/50."""
    memo: dict[tuple[int, int], float] = {}

    def future(a: int, b: int) -> float:
        if a >= maps_needed:
            return 1.0
        if b >= maps_needed:
            return 0.0
        if (a, b) not in memo:
            memo[(a, b)] = 0.5 * future(a + 1, b) + 0.5 * future(a, b + 1)
        return memo[(a, b)]

    if maps1 >= maps_needed:
        return 1.0
    if maps2 >= maps_needed:
        return 0.0
    return current_map * future(maps1 + 1, maps2) + (1.0 - current_map) * future(maps1, maps2 + 1)


def _esports(score: EsportsScore) -> FairProbability:
    best_of = max(1, min(_count(score.best_of), 9))
    maps_needed = best_of // 2 + 1
    maps1 = min(_count(score.maps1), maps_needed)
    maps2 = min(_count(score.maps2), maps_needed)
    rounds1, rounds2 = _count(score.rounds1), _count(score.rounds2)
    rules = ROUND_RULES.get(str(score.game or "").lower())

    if maps1 == maps_needed and maps2 == maps_needed:
        return NO_OPINION

    current_map = _map_probability(rounds1, rounds2, rules)
    prob_side1 = series_probability(maps1, maps2, maps_needed, current_map)
    if prob_side1 == 0.5:
        return NO_OPINION

    confidence = 0.4 + abs(prob_side1 - 0.5) * 1.2
    if maps1 != maps2:
        confidence += 0.1
    return _oriented(prob_side1, confidence)


# =============================================================================
# Dispatch
# =============================================================================

class SportModel(Enum):
    """Closed set of sport model families."""
    TENNIS = "tennis"
    FOOTBALL = "football"
    BASKETBALL = "basketball"
    ESPORTS = "esports"

    @classmethod
    def for_sport(cls, sport: str) -> Optional["SportModel"]:
        """Model family for a canonical sport id, or None when unsupported."""
        return _SPORT_FAMILIES.get((sport or "").lower())

    @property
    def score_type(self) -> type:
        return _SCORE_TYPES[self]

    def fair_probability(self, score: Any) -> FairProbability:
        """Fair probability of the leading side. Never raises."""
        if not isinstance(score, self.score_type):
            return NO_OPINION
        try:
            if self is SportModel.TENNIS:
                result = _tennis(score)
            elif self is SportModel.FOOTBALL:
                result = _football(score)
            elif self is SportModel.BASKETBALL:
                result = _basketball(score)
            else:
                result = _esports(score)
        except (ArithmeticError, ValueError, TypeError, RecursionError):
            return NO_OPINION
        return result.clamped()


_SPORT_FAMILIES = {
    "tennis": SportModel.TENNIS,
    "football": SportModel.FOOTBALL,
    "basketball": SportModel.BASKETBALL,
    "cs2": SportModel.ESPORTS,
    "valorant": SportModel.ESPORTS,
    "lol": SportModel.ESPORTS,
    "dota2": SportModel.ESPORTS,
}

_SCORE_TYPES = {
    SportModel.TENNIS: TennisScore,
    SportModel.FOOTBALL: FootballScore,
    SportModel.BASKETBALL: BasketballScore,
    SportModel.ESPORTS: EsportsScore,
}


def fair_probability(sport: str, score: Any) -> FairProbability:
    """Fair probability for any sport; unsupported sports have no opinion."""
    model = SportModel.for_sport(sport)
    if model is None:
        return NO_OPINION
    return model.fair_probability(score)
