"""
Staleness Sweeper.

Periodic task, independent of ingest traffic, that evicts matches whose
sources have all gone quiet for longer than the freshness window. An
eviction is the "live -> finished/stale" boundary, reported through the
optional on_evicted callback.
"""

import asyncio
import time
from typing import Callable, Optional

import structlog

from livefusion.fusion.alias_cache import AliasCache
from livefusion.fusion.state_store import SourceStateStore
from livefusion.models.schemas import MatchKey

logger = structlog.get_logger()


class StalenessSweeper:
    """Runs store.sweep() on a fixed period until stopped."""

    def __init__(
        self,
        store: SourceStateStore,
        interval_seconds: float = 5.0,
        alias_cache: Optional[AliasCache] = None,
        on_evicted: Optional[Callable[[list[MatchKey]], None]] = None,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.alias_cache = alias_cache
        self.on_evicted = on_evicted
        self.logger = logger.bind(component="staleness_sweeper")

        self._running = False
        self._stop_event = asyncio.Event()
        self._runs = 0
        self._evicted_total = 0
        self._last_run_ms = 0

    def sweep_once(self, now: Optional[float] = None) -> list[MatchKey]:
        now = now if now is not None else time.time()
        evicted = self.store.sweep(now)
        if self.alias_cache is not None:
            self.alias_cache.purge_expired(now)

        self._runs += 1
        self._evicted_total += len(evicted)
        self._last_run_ms = int(now * 1000)

        if evicted and self.on_evicted:
            try:
                self.on_evicted(evicted)
            except Exception as e:
                self.logger.error("on_evicted callback failed", error=str(e))
        return evicted

    async def start(self) -> None:
        """Sweep every interval until stop() or cancellation."""
        self._running = True
        self._stop_event.clear()
        self.logger.info("Staleness sweeper started", interval=f"{self.interval_seconds:.1f}s")

        try:
            while self._running:
                self.sweep_once()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.logger.info("Staleness sweeper stopped", runs=self._runs)

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_metrics(self) -> dict:
        return {
            "runs": self._runs,
            "evicted_total": self._evicted_total,
            "last_run_ms": self._last_run_ms,
            "interval_seconds": self.interval_seconds,
        }
