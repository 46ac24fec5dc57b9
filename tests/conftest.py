"""Shared fixtures."""

import time
from typing import Optional

import pytest

from config.settings import FusionSettings, HubSettings, OpportunitySettings, PolicySettings
from livefusion.engine.decision import AutoBetDecisionEngine
from livefusion.engine.opportunity import OpportunityEngine
from livefusion.feeds.ingest import FeedIngestor
from livefusion.fusion.resolver import MatchKeyResolver
from livefusion.fusion.state_store import SourceStateStore
from livefusion.models.schemas import MatchKey, Opportunity, SignalKind, ConfidenceTier
from livefusion.trading.audit import AuditLedger
from livefusion.trading.executor import PaperExecutor
from livefusion.trading.risk import RiskLedger


@pytest.fixture
def now():
    """A fixed 'now' close to wall-clock time (daily windows follow the real date)."""
    return float(int(time.time()))


@pytest.fixture
def store():
    return SourceStateStore(FusionSettings())


@pytest.fixture
def resolver(store):
    return MatchKeyResolver(store)


@pytest.fixture
def ingestor(store, resolver):
    return FeedIngestor(store, resolver, HubSettings())


@pytest.fixture
def opportunity_engine(store):
    return OpportunityEngine(store, OpportunitySettings())


@pytest.fixture
def policy():
    """Default policy with instant confirmation polls."""
    return PolicySettings(confirmation_delay_seconds=0.0, confirmation_timeout_seconds=1.0)


@pytest.fixture
def ledger(tmp_path):
    ledger = AuditLedger(str(tmp_path / "ledger.jsonl"), fsync=False)
    yield ledger
    ledger.close()


@pytest.fixture
def paper_executor():
    return PaperExecutor()


@pytest.fixture
def make_engine(ledger, paper_executor):
    """Build a decision engine over a fresh RiskLedger for a given policy."""
    def _make(policy: PolicySettings, executor=None, audit=None) -> AutoBetDecisionEngine:
        engine = AutoBetDecisionEngine(
            risk=RiskLedger(policy),
            executor=executor or paper_executor,
            ledger=audit or ledger,
            config=policy,
            state_gate_timeout_seconds=0.5,
        )
        return engine

    return _make


@pytest.fixture
def make_opportunity(now):
    """Opportunity factory. Defaults describe a football 1-0 at 70' priced at 55%."""

    def _make(
        condition_id: str = "cond-1",
        edge_pct: float = 23.0,
        market_price: float = 1.818,
        sport: str = "football",
        kind: SignalKind = SignalKind.SCORE_MOMENTUM,
        teams: tuple[str, str] = ("arsenal", "chelsea"),
        market: str = "match_winner",
        tier: Optional[ConfidenceTier] = None,
        fair_probability: float = 0.78,
    ) -> Opportunity:
        key = MatchKey.build(sport, *teams)
        return Opportunity(
            opportunity_id=f"opp-{condition_id}-{edge_pct}",
            key=key,
            sport=sport,
            kind=kind,
            side=1,
            selection=key.team1,
            fair_probability=fair_probability,
            market_price=market_price,
            implied_probability=1 / market_price,
            edge_pct=edge_pct,
            source_count=1,
            generated_at=now,
            source="book-feed",
            bookmaker="pinnacle",
            market=market,
            condition_id=condition_id,
            outcome_id=f"{condition_id}:1",
            confidence=0.9,
            tier=tier,
        )

    return _make

