"""
Feed ingestion: envelope validation, normalization and store writes.

Producers are untrusted. Anything that fails validation or normalization
is answered with ok=false and dropped; it never raises out of here.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

import orjson
import structlog
from pydantic import ValidationError

from config.settings import HubSettings
from livefusion.errors import MalformedObservation
from livefusion.feeds.base import FeedHealth
from livefusion.fusion.resolver import MatchKeyResolver
from livefusion.fusion.state_store import SourceStateStore
from livefusion.models.schemas import (
    BasketballScore,
    DetailedScore,
    EsportsScore,
    FeedEnvelope,
    FeedMessageType,
    FootballScore,
    LiveMatchPayload,
    LiveObservation,
    MatchKey,
    ObservationKind,
    OddsPayload,
    OddsQuote,
    RawObservation,
    Sport,
    TennisScore,
    swap_score,
)

logger = structlog.get_logger()

SUPPORTED_VERSION = 1

# Statuses that mean the match is not in play
NOT_LIVE_STATUSES = frozenset({
    "finished", "ended", "final", "ft", "aet", "after penalties", "full time",
    "cancelled", "canceled", "postponed", "abandoned", "interrupted",
    "not started", "scheduled", "ns", "pre", "prematch", "upcoming",
})

FOOTBALL_PERIODS = {"ht": "ht", "half time": "ht", "halftime": "ht", "et": "et", "extra time": "et",
                    "pen": "pen", "penalties": "pen", "2h": "2h", "2nd half": "2h", "1h": "1h"}


def parse_ts(ts: Optional[str], now: float) -> float:
    """Producer RFC 3339 timestamp as epoch seconds, clamped to now. Missing/invalid -> now."""
    if not ts:
        return now
    try:
        parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return now
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return min(parsed.timestamp(), now)


def is_live_status(status: Optional[str]) -> bool:
    if not status:
        return True
    return status.strip().lower() not in NOT_LIVE_STATUSES


def build_score(sport: str, payload: LiveMatchPayload) -> Optional[DetailedScore]:
    """Detailed score in the producer's team order, or None when not modelled."""
    if payload.score1 is None or payload.score2 is None:
        return None

    canonical = Sport.from_string(sport)
    if canonical is None:
        return None

    if canonical == Sport.TENNIS:
        return TennisScore(
            sets1=payload.score1,
            sets2=payload.score2,
            games1=payload.sub_score1 or 0,
            games2=payload.sub_score2 or 0,
            point1=payload.point1 or "0",
            point2=payload.point2 or "0",
            server=payload.server,
            best_of=payload.best_of or 3,
        )
    if canonical == Sport.FOOTBALL:
        period = (payload.period or "").strip().lower()
        if not period:
            period = (payload.status or "").strip().lower()
        return FootballScore(
            goals1=payload.score1,
            goals2=payload.score2,
            minute=payload.minute or 0,
            period=FOOTBALL_PERIODS.get(period, "1h" if (payload.minute or 0) <= 45 else "2h"),
        )
    if canonical == Sport.BASKETBALL:
        return BasketballScore(
            points1=payload.score1,
            points2=payload.score2,
            quarter=payload.quarter or 1,
            clock_seconds=payload.clock_seconds,
        )
    return EsportsScore(
        maps1=payload.score1,
        maps2=payload.score2,
        best_of=payload.best_of or 3,
        rounds1=payload.sub_score1 or 0,
        rounds2=payload.sub_score2 or 0,
        game=canonical.value,
    )


class FeedIngestor:
    """Turns feed hub text frames into store writes and ack notes."""

    def __init__(
        self,
        store: SourceStateStore,
        resolver: MatchKeyResolver,
        config: Optional[HubSettings] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.config = config or HubSettings()
        self.logger = logger.bind(component="feed_ingest")

        self.health: dict[str, FeedHealth] = {}

        # Metrics
        self._notes: dict[str, int] = {}
        self._fusion_ready = 0

    # =========================================================================
    # Entry point
    # =========================================================================

    def handle_text(self, text: Union[str, bytes], now: Optional[float] = None) -> tuple[bool, str]:
        """Process one text frame. Returns the (ok, note) ack."""
        now = now if now is not None else time.time()
        source = "unknown"
        kind = "text"

        if len(text) > self.config.max_message_bytes:
            ok, note = False, "parse_error:message too large"
        else:
            try:
                envelope = FeedEnvelope.model_validate(orjson.loads(text))
                source = envelope.source
                kind = envelope.type.value
                ok, note = self.handle_envelope(envelope, now)
            except orjson.JSONDecodeError as e:
                ok, note = False, f"parse_error:invalid JSON envelope: {e}"
            except ValidationError as e:
                ok, note = False, f"parse_error:{_validation_summary(e)}"
            except MalformedObservation as e:
                ok, note = False, f"parse_error:{e}"

        health = self.health.get(source)
        if health is None:
            health = self.health[source] = FeedHealth(source=source, connected=True)
        health.record_message(kind, ok, note, now)

        bucket = note.split(":", 1)[0] if not note.startswith("odds_") else note.rsplit(":", 1)[0]
        self._notes[bucket] = self._notes.get(bucket, 0) + 1

        self.logger.debug("feed_ingest", source=source, msg_type=kind, ok=ok, note=note)
        return ok, note

    def handle_envelope(self, envelope: FeedEnvelope, now: float) -> tuple[bool, str]:
        if envelope.v != SUPPORTED_VERSION:
            return False, f"unsupported version {envelope.v}"

        observed_at = parse_ts(envelope.ts, now)

        if envelope.type == FeedMessageType.HEARTBEAT:
            return True, "heartbeat"

        if envelope.type == FeedMessageType.LIVE_MATCH:
            payload = LiveMatchPayload.model_validate(envelope.payload)
            observation = RawObservation(
                source=envelope.source,
                kind=ObservationKind.LIVE_SCORE,
                sport=payload.sport,
                team1=payload.team1,
                team2=payload.team2,
                observed_at=observed_at,
                league=payload.league,
                live=payload,
            )
            key, applied = self.ingest_live(observation, now)
            return True, "live_match_ingested" if applied else "live_match_out_of_order"

        payload = OddsPayload.model_validate(envelope.payload)
        observation = RawObservation(
            source=envelope.source,
            kind=ObservationKind.ODDS_QUOTE,
            sport=payload.sport,
            team1=payload.team1,
            team2=payload.team2,
            observed_at=observed_at,
            odds=payload,
        )
        key, passed, why = self.ingest_odds(observation, now)
        if passed:
            return True, f"odds_ingested_gated:{why}"
        return True, f"odds_ingested_rejected:{why}"

    # =========================================================================
    # Live scores
    # =========================================================================

    def ingest_live(self, raw: RawObservation, now: Optional[float] = None) -> tuple[MatchKey, bool]:
        """Normalize, orient and apply a live score. Raises MalformedObservation."""
        now = now if now is not None else time.time()
        payload = raw.live
        resolved = self.resolver.resolve_oriented(raw.sport, raw.team1, raw.team2, now)
        key = resolved.key

        score = build_score(key.sport, payload)
        score1, score2 = payload.score1, payload.score2
        display1, display2 = payload.team1, payload.team2
        if resolved.swapped:
            score = swap_score(score)
            score1, score2 = score2, score1
            display1, display2 = display2, display1

        observation = LiveObservation(
            score=score,
            score1=score1,
            score2=score2,
            status=payload.status or "",
            is_live=is_live_status(payload.status),
            observed_at=min(raw.observed_at, now),
            team1_display=display1,
            team2_display=display2,
        )
        return key, self.store.apply(key, raw.source, observation)

    # =========================================================================
    # Odds
    # =========================================================================

    def gate_odds(self, payload: OddsPayload, observed_at: float, now: Optional[float] = None) -> tuple[bool, str]:
        """Liquidity, spread and age gate. Reporting only; the quote is stored either way."""
        now = now if now is not None else time.time()
        if payload.liquidity_usd is None or payload.liquidity_usd < self.config.min_liquidity_usd:
            return False, f"liquidity<{self.config.min_liquidity_usd:.0f}"
        if payload.spread_pct is None or payload.spread_pct > self.config.max_spread_pct:
            return False, f"spread>{self.config.max_spread_pct:g}%"
        if abs(now - observed_at) > self.config.max_gate_age_seconds:
            return False, f"stale>{self.config.max_gate_age_seconds:.0f}s"
        return True, "ok"

    def ingest_odds(self, raw: RawObservation, now: Optional[float] = None) -> tuple[MatchKey, bool, str]:
        """Normalize, orient, gate and apply a quote. Raises MalformedObservation."""
        now = now if now is not None else time.time()
        payload = raw.odds
        resolved = self.resolver.resolve_oriented(raw.sport, raw.team1, raw.team2, now)
        key = resolved.key
        passed, why = self.gate_odds(payload, raw.observed_at, now)

        price1, price2 = payload.odds_team1, payload.odds_team2
        outcome1, outcome2 = payload.outcome1_id, payload.outcome2_id
        if resolved.swapped:
            price1, price2 = price2, price1
            outcome1, outcome2 = outcome2, outcome1

        quote = OddsQuote(
            key=key,
            source=raw.source,
            bookmaker=payload.bookmaker,
            market=payload.market,
            price1=price1,
            price2=price2,
            observed_at=raw.observed_at,
            condition_id=payload.condition_id,
            outcome1_id=outcome1,
            outcome2_id=outcome2,
            liquidity_usd=payload.liquidity_usd,
            spread_pct=payload.spread_pct,
            swapped=resolved.swapped,
            gated=passed,
            gate_reason=why,
        )
        self.store.apply(key, raw.source, quote)

        if passed:
            state = self.store.snapshot(key, now)
            if state is not None and state.has_live_state:
                self._fusion_ready += 1
                self.logger.info(
                    "live_fusion_ready",
                    sport=key.sport,
                    match_key=str(key),
                    live_source=state.score_source,
                    odds_source=raw.source,
                    bookmaker=payload.bookmaker,
                    market=payload.market,
                    liquidity_usd=payload.liquidity_usd,
                    spread_pct=payload.spread_pct,
                )
        return key, passed, why

    # =========================================================================
    # Metrics
    # =========================================================================

    def source_connected(self, source: str, connected: bool) -> None:
        health = self.health.get(source)
        if health is None:
            health = self.health[source] = FeedHealth(source=source)
        health.connected = connected

    def get_metrics(self) -> dict:
        return {
            "notes": dict(self._notes),
            "fusion_ready_total": self._fusion_ready,
            "sources": {s: h.to_dict() for s, h in self.health.items()},
            "resolver": self.resolver.get_metrics(),
        }


def _validation_summary(error: ValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid')}" if loc else first.get("msg", "invalid")
