"""Tests for the source state store and staleness sweeper."""

import asyncio

import pytest

from livefusion.fusion.alias_cache import AliasCache
from livefusion.fusion.sweeper import StalenessSweeper
from livefusion.models.schemas import (
    EsportsScore,
    FootballScore,
    LiveObservation,
    MatchKey,
    OddsQuote,
)

KEY = MatchKey.build("football", "arsenal", "chelsea")


def live(observed_at: float, score1: int = 1, score2: int = 0, is_live: bool = True, status: str = "2H") -> LiveObservation:
    return LiveObservation(
        score=FootballScore(score1, score2, 70, "2h"),
        score1=score1,
        score2=score2,
        status=status,
        is_live=is_live,
        observed_at=observed_at,
    )


def quote(observed_at: float, source: str = "book-a", price1: float = 1.8, price2: float = 2.1) -> OddsQuote:
    return OddsQuote(
        key=KEY,
        source=source,
        bookmaker="pinnacle",
        market="match_winner",
        price1=price1,
        price2=price2,
        observed_at=observed_at,
    )


class TestApply:
    """Tests for per-source writes."""

    def test_live_observation_sets_score(self, store, now):
        assert store.apply(KEY, "flash", live(now)) is True

        snap = store.snapshot(KEY, now)
        assert snap.score1 == 1 and snap.score2 == 0
        assert snap.score_source == "flash"
        assert snap.is_live is True
        assert snap.has_live_state

    def test_out_of_order_live_dropped(self, store, now):
        store.apply(KEY, "flash", live(now, 2, 0))
        assert store.apply(KEY, "flash", live(now - 5, 1, 0)) is False
        assert store.snapshot(KEY, now).score1 == 2

    def test_latest_source_owns_score(self, store, now):
        store.apply(KEY, "flash", live(now - 2, 1, 0))
        store.apply(KEY, "sofa", live(now, 2, 0))
        store.apply(KEY, "flash", live(now - 1, 1, 0))

        snap = store.snapshot(KEY, now)
        assert snap.score1 == 2
        assert snap.score_source == "sofa"

    def test_quotes_do_not_touch_score(self, store, now):
        store.apply(KEY, "flash", live(now))
        store.apply(KEY, "book-a", quote(now))

        snap = store.snapshot(KEY, now)
        assert snap.score_source == "flash"
        assert ("book-a", "match_winner") in snap.quotes

    def test_out_of_order_quote_dropped(self, store, now):
        store.apply(KEY, "book-a", quote(now, price1=1.9))
        assert store.apply(KEY, "book-a", quote(now - 1, price1=1.5)) is False
        assert store.snapshot(KEY, now).quotes[("book-a", "match_winner")].price1 == 1.9

    def test_finished_status_clears_live_signal(self, store, now):
        store.apply(KEY, "flash", live(now - 1))
        store.apply(KEY, "flash", live(now, is_live=False, status="finished"))
        assert store.snapshot(KEY, now).is_live is False

    def test_delayed_live_after_finished_dropped(self, store, now):
        store.apply(KEY, "flash", live(now, 2, 1, is_live=False, status="finished"))
        assert store.apply(KEY, "flash", live(now - 30, 1, 1)) is False

        snap = store.snapshot(KEY, now)
        assert snap.is_live is False
        assert snap.live_signals == {}
        assert (snap.score1, snap.score2) == (2, 1)

    def test_snapshot_is_a_copy(self, store, now):
        store.apply(KEY, "book-a", quote(now))
        snap = store.snapshot(KEY, now)
        snap.quotes.clear()
        assert store.snapshot(KEY, now).quotes

    def test_counts_and_fused_keys(self, store, now):
        other = MatchKey.build("football", "everton", "fulham")
        store.apply(KEY, "flash", live(now))
        store.apply(KEY, "book-a", quote(now))
        store.apply(other, "book-a", quote(now))

        assert store.counts() == {"matches": 2, "live_items": 1, "odds_items": 2}
        assert store.fused_keys() == [KEY]

    def test_keys_indexed_by_sport(self, store, now):
        store.apply(KEY, "flash", live(now))
        assert list(store.keys_for_sport("football")) == [KEY]
        assert store.contains(KEY)
        assert not list(store.keys_for_sport("tennis"))


class TestSweep:
    """Tests for staleness eviction."""

    def test_stale_source_dropped_fresh_kept(self, store, now):
        store.apply(KEY, "flash", live(now - 200))
        store.apply(KEY, "book-a", quote(now - 10))

        assert store.sweep(now) == []
        snap = store.snapshot(KEY, now)
        assert "flash" not in snap.source_updates
        assert "book-a" in snap.source_updates

    def test_stale_quotes_removed(self, store, now):
        store.apply(KEY, "flash", live(now))
        store.apply(KEY, "book-a", quote(now - 130))
        store.sweep(now)
        assert store.snapshot(KEY, now).quotes == {}

    def test_all_stale_evicts(self, store, now):
        store.apply(KEY, "flash", live(now - 121))
        store.apply(KEY, "book-a", quote(now - 125))

        assert store.sweep(now) == [KEY]
        assert store.snapshot(KEY, now) is None
        assert not store.contains(KEY)

    def test_within_window_survives(self, store, now):
        store.apply(KEY, "flash", live(now - 119))
        assert store.sweep(now) == []

    def test_live_flag_follows_freshness(self, store, now):
        store.apply(KEY, "flash", live(now))
        assert store.snapshot(KEY, now + 121).is_live is False


class TestScenarioEsportsConcluded:
    """Esports map score goes silent; the match is treated as concluded."""

    def test_silence_evicts_match(self, store, resolver, now):
        key = resolver.resolve("cs2", "Natus Vincere", "Team Vitality")
        store.apply(key, "hltv", LiveObservation(
            score=EsportsScore(maps1=1, maps2=0, best_of=3, rounds1=13, rounds2=6, game="cs2"),
            score1=1,
            score2=0,
            status="live",
            is_live=True,
            observed_at=now,
        ))
        assert store.snapshot(key, now + 60) is not None

        store.sweep(now + 121)
        assert store.snapshot(key, now + 121) is None


class TestStalenessSweeper:
    """Tests for the sweeper task."""

    def test_sweep_once_purges_alias_cache(self, store, now):
        cache = AliasCache(ttl_seconds=10)
        cache.put(KEY, KEY, "token_subset", 2, now=now - 20)
        evicted = []
        sweeper = StalenessSweeper(store, alias_cache=cache, on_evicted=evicted.extend)
        store.apply(KEY, "flash", live(now - 200))

        assert sweeper.sweep_once(now) == [KEY]
        assert evicted == [KEY]
        assert len(cache) == 0
        assert sweeper.get_metrics()["evicted_total"] == 1

    def test_callback_failure_is_contained(self, store, now):
        def boom(keys):
            raise ValueError("boom")

        sweeper = StalenessSweeper(store, on_evicted=boom)
        store.apply(KEY, "flash", live(now - 200))
        assert sweeper.sweep_once(now) == [KEY]

    @pytest.mark.asyncio
    async def test_start_stop(self, store):
        sweeper = StalenessSweeper(store, interval_seconds=0.01)
        task = asyncio.create_task(sweeper.start())
        await asyncio.sleep(0.05)
        assert sweeper.is_running

        await sweeper.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not sweeper.is_running
        assert sweeper.get_metrics()["runs"] >= 1
