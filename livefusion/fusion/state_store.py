"""
Source State Store.

Per-MatchKey fused state built from many sources. Live-score sources own
the score fields, odds sources own their (source, market) quote slot, and
each write touches only the slots its source owns.

Every method runs to completion without awaiting, so on the event loop
each apply/sweep is atomic with respect to other tasks. Readers only ever
receive copies from snapshot().
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

import structlog

from config.settings import FusionSettings
from livefusion.models.schemas import FusedMatchState, LiveObservation, MatchKey, OddsQuote

logger = structlog.get_logger()

Observation = Union[LiveObservation, OddsQuote]


@dataclass
class _Entry:
    state: FusedMatchState
    score_observed_at: float = 0.0
    # Last live-score report per source, kept after a finished report
    live_reports: dict[str, float] = field(default_factory=dict)


class SourceStateStore:
    """Concurrent-safe (event loop) map of MatchKey -> fused state."""

    def __init__(self, config: Optional[FusionSettings] = None):
        self.config = config or FusionSettings()
        self._entries: dict[MatchKey, _Entry] = {}
        self._by_sport: dict[str, set[MatchKey]] = {}
        self.logger = logger.bind(component="state_store")

        # Metrics
        self._applied = 0
        self._out_of_order = 0
        self._evicted = 0

    @property
    def freshness_window(self) -> float:
        return self.config.freshness_window_seconds

    # =========================================================================
    # Key index (used by the resolver)
    # =========================================================================

    def contains(self, key: MatchKey) -> bool:
        return key in self._entries

    def keys_for_sport(self, sport: str) -> Iterable[MatchKey]:
        return tuple(self._by_sport.get(sport, ()))

    def keys(self) -> list[MatchKey]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Writes
    # =========================================================================

    def apply(self, key: MatchKey, source_id: str, observation: Observation) -> bool:
        """
        Apply one normalized observation from one source.

        Returns False when the observation is older than what this source
        already reported for the same slot (out-of-order/duplicate).
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(state=FusedMatchState(key=key, sport=key.sport))
            self._entries[key] = entry
            self._by_sport.setdefault(key.sport, set()).add(key)

        state = entry.state
        if isinstance(observation, OddsQuote):
            slot = (source_id, observation.market)
            previous = state.quotes.get(slot)
            if previous is not None and observation.observed_at < previous.observed_at:
                self._out_of_order += 1
                return False
            state.quotes[slot] = observation
        else:
            if observation.observed_at < entry.live_reports.get(source_id, 0.0):
                self._out_of_order += 1
                return False
            entry.live_reports[source_id] = observation.observed_at
            if observation.is_live:
                state.live_signals[source_id] = observation.observed_at
            else:
                state.live_signals.pop(source_id, None)

            # Latest live report across sources owns the score
            if observation.observed_at >= entry.score_observed_at:
                entry.score_observed_at = observation.observed_at
                state.score = observation.score
                state.score1 = observation.score1
                state.score2 = observation.score2
                state.status = observation.status
                state.score_source = source_id
                if observation.team1_display:
                    state.team1_display = observation.team1_display
                    state.team2_display = observation.team2_display

        state.source_updates[source_id] = max(
            state.source_updates.get(source_id, 0.0), observation.observed_at
        )
        self._applied += 1
        return True

    def remove(self, key: MatchKey) -> None:
        if self._entries.pop(key, None) is not None:
            keys = self._by_sport.get(key.sport)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_sport[key.sport]

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshot(self, key: MatchKey, now: Optional[float] = None) -> Optional[FusedMatchState]:
        """Copy of the fused state, or None when absent/evicted."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._copy(entry.state, now if now is not None else time.time())

    def snapshots(self, now: Optional[float] = None) -> list[FusedMatchState]:
        now = now if now is not None else time.time()
        return [self._copy(e.state, now) for e in list(self._entries.values())]

    def _copy(self, state: FusedMatchState, now: float) -> FusedMatchState:
        snap = copy.copy(state)
        snap.source_updates = dict(state.source_updates)
        snap.live_signals = dict(state.live_signals)
        snap.quotes = dict(state.quotes)
        snap.is_live = any(
            now - ts <= self.freshness_window for ts in state.live_signals.values()
        )
        return snap

    def counts(self) -> dict:
        live_items = sum(1 for e in self._entries.values() if e.state.has_live_state)
        odds_items = sum(len(e.state.quotes) for e in self._entries.values())
        return {
            "matches": len(self._entries),
            "live_items": live_items,
            "odds_items": odds_items,
        }

    def fused_keys(self, limit: Optional[int] = None) -> list[MatchKey]:
        """Keys with both a live state and at least one quote."""
        fused = []
        for key, entry in self._entries.items():
            if entry.state.has_live_state and entry.state.quotes:
                fused.append(key)
                if limit is not None and len(fused) >= limit:
                    break
        return fused

    # =========================================================================
    # Staleness
    # =========================================================================

    def sweep(self, now: Optional[float] = None) -> list[MatchKey]:
        """
        Drop sources past the freshness window; evict matches with none left.

        Returns evicted keys.
        """
        now = now if now is not None else time.time()
        window = self.freshness_window
        evicted = []

        for key, entry in list(self._entries.items()):
            state = entry.state
            stale = [s for s, ts in state.source_updates.items() if now - ts > window]
            if len(stale) == len(state.source_updates):
                self.remove(key)
                evicted.append(key)
                continue

            for source in stale:
                del state.source_updates[source]
                state.live_signals.pop(source, None)
            if stale:
                stale_set = set(stale)
                state.quotes = {
                    slot: q for slot, q in state.quotes.items() if slot[0] not in stale_set
                }

        if evicted:
            self._evicted += len(evicted)
            self.logger.info(
                "Matches evicted (all sources stale)",
                count=len(evicted),
                keys=[str(k) for k in evicted[:10]],
                window=f"{window:.0f}s",
            )
        return evicted

    def get_metrics(self) -> dict:
        return {
            **self.counts(),
            "applied": self._applied,
            "out_of_order": self._out_of_order,
            "evicted": self._evicted,
        }
