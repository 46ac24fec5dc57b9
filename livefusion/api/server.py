"""Read-only query API: fused state, opportunities, risk and metrics."""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, FastAPI, Request
from pydantic import BaseModel

from config.settings import ApiSettings
from livefusion.engine.opportunity import OpportunityEngine
from livefusion.fusion.state_store import SourceStateStore
from livefusion.trading.risk import RiskLedger

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime


class LiveItem(BaseModel):
    match_key: str
    source: str
    seen_at: float
    team1: str
    team2: str
    score1: Optional[int] = None
    score2: Optional[int] = None
    status: str = ""
    is_live: bool = False


class OddsItem(BaseModel):
    match_key: str
    source: str
    seen_at: float
    bookmaker: str
    market: str
    odds_team1: float
    odds_team2: float
    liquidity_usd: Optional[float] = None
    spread_pct: Optional[float] = None
    gated: bool = False
    gate_reason: str = ""


class StateResponse(BaseModel):
    ts: datetime
    connections: int
    matches: int
    live_items: int
    odds_items: int
    fused_ready: int
    fused_keys: list[str]
    live: list[LiveItem]
    odds: list[OddsItem]


class OpportunityItem(BaseModel):
    opportunity_id: str
    match_key: str
    sport: str
    kind: str
    selection: str
    market_price: float
    fair_probability: float
    implied_probability: float
    edge_pct: float
    source_count: int
    bookmaker: str
    market: str
    condition_id: str
    tier: Optional[str] = None
    confidence: float
    reasons: list[str]
    generated_at: float


class OpportunitiesResponse(BaseModel):
    ts: datetime
    count: int
    opportunities: list[OpportunityItem]


def _components(request: Request) -> Any:
    return request.app.state


@router.get("/health", response_model=HealthResponse)
async def health():
    """Basic health check."""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


@router.get("/state", response_model=StateResponse)
async def state(request: Request):
    """Fused state snapshot, capped per list."""
    app_state = _components(request)
    store: SourceStateStore = app_state.store
    limit = app_state.config.max_items
    now = time.time()

    snapshots = store.snapshots(now)
    live: list[LiveItem] = []
    odds: list[OddsItem] = []
    for snap in snapshots:
        if snap.has_live_state and len(live) < limit:
            live.append(LiveItem(
                match_key=str(snap.key),
                source=snap.score_source,
                seen_at=snap.source_updates.get(snap.score_source, 0.0),
                team1=snap.team1_display or snap.key.team1,
                team2=snap.team2_display or snap.key.team2,
                score1=snap.score1,
                score2=snap.score2,
                status=snap.status,
                is_live=snap.is_live,
            ))
        for quote in snap.quotes.values():
            if len(odds) >= limit:
                break
            odds.append(OddsItem(
                match_key=str(snap.key),
                source=quote.source,
                seen_at=quote.observed_at,
                bookmaker=quote.bookmaker,
                market=quote.market,
                odds_team1=quote.price1,
                odds_team2=quote.price2,
                liquidity_usd=quote.liquidity_usd,
                spread_pct=quote.spread_pct,
                gated=quote.gated,
                gate_reason=quote.gate_reason,
            ))

    counts = store.counts()
    fused = store.fused_keys()
    connections = app_state.connections() if app_state.connections else 0
    return StateResponse(
        ts=datetime.now(timezone.utc),
        connections=connections,
        matches=counts["matches"],
        live_items=counts["live_items"],
        odds_items=counts["odds_items"],
        fused_ready=len(fused),
        fused_keys=[str(k) for k in fused[:limit]],
        live=live,
        odds=odds,
    )


@router.get("/opportunities", response_model=OpportunitiesResponse)
async def opportunities(request: Request):
    """Current opportunity set from the last evaluation tick."""
    app_state = _components(request)
    engine: OpportunityEngine = app_state.opportunity_engine
    current = engine.current()[: app_state.config.max_items]
    return OpportunitiesResponse(
        ts=datetime.now(timezone.utc),
        count=len(current),
        opportunities=[
            OpportunityItem(
                opportunity_id=o.opportunity_id,
                match_key=str(o.key),
                sport=o.sport,
                kind=o.kind.value,
                selection=o.selection,
                market_price=o.market_price,
                fair_probability=round(o.fair_probability, 4),
                implied_probability=round(o.implied_probability, 4),
                edge_pct=o.edge_pct,
                source_count=o.source_count,
                bookmaker=o.bookmaker,
                market=o.market,
                condition_id=o.condition_id,
                tier=o.tier.value if o.tier else None,
                confidence=round(o.confidence, 3),
                reasons=o.reasons,
                generated_at=o.generated_at,
            )
            for o in current
        ],
    )


@router.get("/risk")
async def risk(request: Request) -> dict:
    """RiskState snapshot and circuit breaker status."""
    ledger: Optional[RiskLedger] = _components(request).risk
    if ledger is None:
        return {"enabled": False}
    return {"enabled": True, **ledger.snapshot()}


@router.get("/metrics")
async def metrics(request: Request) -> dict:
    """Per-component metrics."""
    provider = _components(request).metrics
    return provider() if provider else {}


def create_app(
    store: SourceStateStore,
    opportunity_engine: OpportunityEngine,
    risk: Optional[RiskLedger] = None,
    metrics: Optional[Callable[[], dict]] = None,
    connections: Optional[Callable[[], int]] = None,
    config: Optional[ApiSettings] = None,
) -> FastAPI:
    """Build the query API over live components."""
    app = FastAPI(
        title="LiveFusion",
        description="Live sports feed fusion: fused state, opportunities and risk",
        version="0.1.0",
    )
    app.state.store = store
    app.state.opportunity_engine = opportunity_engine
    app.state.risk = risk
    app.state.metrics = metrics
    app.state.connections = connections
    app.state.config = config or ApiSettings()
    app.include_router(router)
    return app
