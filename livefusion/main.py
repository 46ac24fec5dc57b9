"""
LiveFusion - Main Application

Fuses live score feeds and bookmaker odds from many untrusted sources into
one state per match, scores opportunities and (in shadow/auto mode) runs
them through the auto-bet decision engine.
"""

import asyncio
import signal
import time
from typing import Optional

import structlog
import uvicorn
from dotenv import load_dotenv

from config.settings import OperatingMode, Settings, settings as default_settings
from livefusion.api.server import create_app
from livefusion.engine.decision import AutoBetDecisionEngine
from livefusion.engine.opportunity import OpportunityEngine
from livefusion.feeds.hub import FeedHub
from livefusion.feeds.ingest import FeedIngestor
from livefusion.fusion.resolver import MatchKeyResolver
from livefusion.fusion.state_store import SourceStateStore
from livefusion.fusion.sweeper import StalenessSweeper
from livefusion.models.schemas import ConfidenceTier, MatchKey
from livefusion.trading.audit import AuditLedger
from livefusion.trading.executor import HttpExecutor, PaperExecutor
from livefusion.trading.risk import RiskLedger
from livefusion.utils.alerts import DiscordAlerter
from livefusion.utils.circuit_breaker import CircuitBreaker
from livefusion.utils.logging import OpportunityJournal, setup_logging

logger = structlog.get_logger()


class FusionBot:
    """
    Main orchestrator.

    Coordinates:
    - Feed hub (WebSocket ingestion) and its heartbeat
    - Source state store and staleness sweeper
    - Opportunity engine tick
    - Auto-bet decision engine (shadow/auto)
    - Query API
    - Logging and alerting
    """

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.logger = logger.bind(component="bot")

        setup_logging(self.settings.log_level, self.settings.log_dir)
        self.journal = OpportunityJournal(self.settings.log_dir)

        # Discord alerter
        self.alerter: Optional[DiscordAlerter] = None
        if self.settings.alerts.discord_webhook_url:
            self.alerter = DiscordAlerter(
                self.settings.alerts.discord_webhook_url,
                cooldown_seconds=self.settings.alerts.alert_cooldown_seconds,
            )

        # Fusion
        self.store = SourceStateStore(self.settings.fusion)
        self.resolver = MatchKeyResolver(self.store, self.settings.resolver, self.settings.normalizer)
        self.ingestor = FeedIngestor(self.store, self.resolver, self.settings.hub)
        self.hub = FeedHub(self.ingestor, self.settings.hub)
        self.sweeper = StalenessSweeper(
            self.store,
            interval_seconds=self.settings.fusion.sweep_interval_seconds,
            alias_cache=self.resolver.cache,
            on_evicted=self._on_evicted,
        )
        self.opportunity_engine = OpportunityEngine(self.store, self.settings.opportunity)

        # Decisioning
        self.mode = self.settings.mode
        self.ledger: Optional[AuditLedger] = None
        self.risk: Optional[RiskLedger] = None
        self.decision_engine: Optional[AutoBetDecisionEngine] = None
        self.executor = None
        if self.mode in (OperatingMode.SHADOW, OperatingMode.AUTO):
            self._init_decisioning()

        self.api_server: Optional[uvicorn.Server] = None

        # Control flags
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def _init_decisioning(self) -> None:
        policy = self.settings.policy
        breaker = CircuitBreaker(
            daily_loss_limit=policy.daily_loss_limit,
            loss_streak_limit=policy.loss_streak_limit,
            cooldown_seconds=policy.loss_streak_cooldown_seconds,
            on_trip_callback=self.alerter.send_circuit_breaker_alert if self.alerter else None,
        )
        self.risk = RiskLedger(policy, breaker)
        self.ledger = AuditLedger(self.settings.audit.ledger_path, fsync=self.settings.audit.fsync)

        if self.mode == OperatingMode.AUTO and not self.settings.executor.dry_run:
            self.executor = HttpExecutor(self.settings.executor)
        else:
            self.executor = PaperExecutor()

        self.decision_engine = AutoBetDecisionEngine(
            risk=self.risk,
            executor=self.executor,
            ledger=self.ledger,
            config=policy,
            alerter=self.alerter,
            alert_min_edge_pct=self.settings.alerts.alert_min_edge_pct,
            state_gate_timeout_seconds=self.settings.executor.request_timeout_seconds,
        )

    def _on_evicted(self, keys: list[MatchKey]) -> None:
        for key in keys:
            self.logger.info("🏁 Match concluded or went stale", match_key=str(key))

    # =========================================================================
    # Loops
    # =========================================================================

    async def _opportunity_loop(self) -> None:
        """Evaluate opportunities every tick and hand them to decisioning or alerts."""
        tick = self.settings.opportunity.tick_seconds
        while self._running:
            try:
                opportunities = self.opportunity_engine.evaluate()
                fresh = {o.opportunity_id for o in opportunities if self.journal.log_opportunity(o)}

                if self.decision_engine is not None and opportunities:
                    outcomes = await self.decision_engine.evaluate_many(opportunities)
                    for outcome in outcomes:
                        opp_id = outcome.decision.opportunity.opportunity_id if outcome.decision else None
                        if outcome.submitted or opp_id in fresh:
                            self.journal.log_outcome(outcome)
                elif self.alerter is not None:
                    for opp in opportunities:
                        if (
                            opp.opportunity_id in fresh
                            and opp.edge_pct >= self.settings.alerts.alert_min_edge_pct
                            and opp.tier != ConfidenceTier.LOW
                        ):
                            await self.alerter.send_opportunity_alert(opp, note="alert mode")

                await asyncio.sleep(tick)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Opportunity loop error", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(1)

    async def _serve_api(self) -> None:
        app = create_app(
            store=self.store,
            opportunity_engine=self.opportunity_engine,
            risk=self.risk,
            metrics=self.get_metrics,
            connections=lambda: self.hub.connections,
            config=self.settings.api,
        )
        self.api_server = uvicorn.Server(uvicorn.Config(
            app,
            host=self.settings.api.host,
            port=self.settings.api.port,
            log_level="warning",
        ))
        await self.api_server.serve()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _restore_from_ledger(self) -> None:
        """Rebuild RiskState and resume confirmation polls from the audit ledger."""
        if self.ledger is None or self.risk is None:
            return
        records = self.ledger.records()
        self.risk.rebuild(records)
        self.decision_engine.resume_pending(records)

    async def start(self) -> None:
        """Start the bot."""
        self.logger.info(
            "Starting LiveFusion",
            mode=self.mode.value,
            executor=type(self.executor).__name__ if self.executor else None,
            hub_port=self.settings.hub.port,
            api_port=self.settings.api.port,
        )
        self._running = True
        self._restore_from_ledger()

        if self.alerter:
            message = f"🚀 **LiveFusion Started**\n**Mode:** {self.mode.value.upper()}"
            if self.risk:
                message += f"\n**Bankroll:** {self.risk.state.bankroll:.2f}"
            await self.alerter.send_message(message)

        self._tasks = [
            asyncio.create_task(self.hub.start(), name="feed_hub"),
            asyncio.create_task(self.hub.run_heartbeat(), name="feed_hub_heartbeat"),
            asyncio.create_task(self.sweeper.start(), name="staleness_sweeper"),
            asyncio.create_task(self._opportunity_loop(), name="opportunity_loop"),
            asyncio.create_task(self._serve_api(), name="query_api"),
        ]
        self.logger.info("All tasks started", task_count=len(self._tasks))

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass

        self.logger.info("Cancelling all tasks...")
        self._running = False
        if self.api_server is not None:
            self.api_server.should_exit = True
        await self.hub.stop()
        await self.sweeper.stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()

        pending = list(self._tasks)
        if self.decision_engine is not None:
            pending.append(asyncio.create_task(self.decision_engine.stop(), name="confirmation_stop"))

        try:
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True),
                timeout=5.0,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Some tasks didn't finish in time, forcing shutdown")

        await self.stop()

    async def stop(self) -> None:
        """Close clients and files. Ledger records already written stay put."""
        self.logger.info("Stopping bot...")
        self._running = False

        if self.executor is not None:
            await self.executor.close()
        if self.ledger is not None:
            self.ledger.close()
        self.journal.close()

        if self.alerter:
            await self.alerter.send_message("🛑 **LiveFusion Stopped**")
            await self.alerter.close()

        self._shutdown_event.set()
        self.logger.info("Bot stopped")

    def shutdown(self) -> None:
        """Trigger graceful shutdown."""
        if not self._shutdown_event.is_set():
            self._shutdown_event.set()
            self.logger.info("Shutdown signal set")

    def get_metrics(self) -> dict:
        metrics = {
            "ts": time.time(),
            "mode": self.mode.value,
            "feed_hub": self.hub.get_metrics(),
            "state_store": self.store.get_metrics(),
            "sweeper": self.sweeper.get_metrics(),
            "opportunities": self.opportunity_engine.get_metrics(),
        }
        if self.decision_engine is not None:
            metrics["decisions"] = self.decision_engine.get_metrics()
            metrics["executor"] = self.executor.get_metrics()
            metrics["audit_ledger"] = {"records": self.ledger.seq, "path": str(self.ledger.path)}
        if self.alerter is not None:
            metrics["alerts"] = self.alerter.get_metrics()
        return metrics


def main():
    """Main entry point."""
    load_dotenv()
    bot = FusionBot(Settings())

    def signal_handler(sig, frame):
        print("\n\n🛑 Shutdown requested...")
        bot.shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(bot.start())
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")


if __name__ == "__main__":
    main()
