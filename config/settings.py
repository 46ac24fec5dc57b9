"""
Configuration settings for the LiveFusion feed-fusion and auto-bet engine.
Uses pydantic-settings for validation and environment variable loading.

Every threshold below is a policy tuning value. Components receive their
own sub-settings object at construction time; nothing reads the global.
"""

from enum import Enum
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperatingMode(str, Enum):
    """Bot operating modes."""
    SHADOW = "shadow"   # Paper executor, decisions logged only
    ALERT = "alert"     # Opportunities alerted, no decisions
    AUTO = "auto"       # Decision engine places real bets


class NormalizerSettings(BaseSettings):
    """Team/sport name normalization flags."""

    # Youth/reserve/academy qualifiers (u21, b, academy...) are stripped only
    # when this is on. Club qualifiers (fc, esports, gaming) always are.
    extended_suffix_stripping: bool = False

    # Never strip a name below this many tokens
    min_name_tokens: int = 1


class ResolverSettings(BaseSettings):
    """Match key resolution and fuzzy alias cache."""

    # Kill-switch for token-subset matching
    token_subset_matching: bool = True

    # Each side must bring this many significant tokens to a fuzzy match
    min_significant_tokens: int = 2

    # Alias cache (bounded, best-effort)
    alias_cache_capacity: int = 10_000
    alias_cache_ttl_hours: float = 6.0


class FusionSettings(BaseSettings):
    """Source state store and staleness sweeper."""

    freshness_window_seconds: float = 120.0
    sweep_interval_seconds: float = 5.0


class OpportunitySettings(BaseSettings):
    """Opportunity engine thresholds."""

    # Quotes older than this are ignored
    max_odds_age_seconds: float = 20.0

    # Nothing below this edge (percentage points) is emitted
    min_edge_pct: float = 5.0

    # Sport model output below this confidence is "no opinion"
    min_model_confidence: float = 0.5

    # Odds anomaly: divergence vs. consensus of the other sources (%)
    min_divergence_pct: float = 5.0
    max_divergence_pct: float = 60.0
    suspicious_divergence_pct: float = 40.0
    min_independent_sources: int = 2

    # Evaluation tick for the opportunity loop
    tick_seconds: float = 1.0

    # Edge rounding (decimal places)
    edge_decimals: int = 1


class PolicySettings(BaseSettings):
    """Auto-bet decision policy. Fractions are of current bankroll."""

    # Check 1: minimum edge (percentage points) by sport, then by signal kind
    default_min_edge_pct: float = 15.0
    min_edge_pct_by_sport: dict[str, float] = Field(default_factory=lambda: {
        "football": 18.0,
        "tennis": 15.0,
        "basketball": 15.0,
        "cs2": 12.0,
        "valorant": 12.0,
    })
    min_edge_pct_by_signal: dict[str, float] = Field(default_factory=lambda: {
        "score_momentum": 0.0,   # 0 = defer to sport value
        "odds_anomaly": 10.0,
    })

    # Check 1: decimal odds floor/ceiling, overridable per "sport:market"
    odds_floor: float = 1.15
    odds_ceiling: float = 3.0
    odds_ceiling_overrides: dict[str, float] = Field(default_factory=lambda: {
        "cs2:match_winner": 5.0,
    })

    # Check 2: re-bet on the same condition only on strictly growing edge
    allow_rebet: bool = False
    rebet_min_edge_increase_pct: float = 5.0
    max_rebets_per_condition: int = 1

    # Check 3: submitted-but-unconfirmed cap
    max_inflight: int = 3

    # Check 4: exposure caps
    max_bet_fraction: float = 0.05
    max_match_fraction: float = 0.08
    max_condition_fraction: float = 0.05
    max_sport_fraction: float = 0.25
    max_daily_fraction: float = 0.50

    # Check 5: daily loss circuit breaker (absolute, currency units)
    daily_loss_limit: float = 30.0

    # Check 6: loss streak cooldown
    loss_streak_limit: int = 3
    loss_streak_cooldown_seconds: float = 1800.0

    # Check 7: bankroll floor (absolute)
    min_bankroll: float = 20.0

    # Stake sizing
    stake_fraction: float = 0.02
    min_stake: float = 1.0
    kelly_sizing: bool = False
    kelly_fraction: float = 0.25

    # Confirmation poll
    confirmation_delay_seconds: float = 15.0
    confirmation_timeout_seconds: float = 10.0

    # Starting bankroll when the audit ledger is empty
    starting_bankroll: float = 1000.0


class ExecutorSettings(BaseSettings):
    """External bet executor sidecar."""

    base_url: str = "http://127.0.0.1:3030"
    dry_run: bool = True
    request_timeout_seconds: float = 10.0
    retry_delays: list[float] = Field(default_factory=lambda: [1.0, 2.0, 5.0])


class HubSettings(BaseSettings):
    """Feed hub WebSocket ingestion server."""

    host: str = "0.0.0.0"
    port: int = 8080
    heartbeat_interval_seconds: float = 10.0
    max_message_bytes: int = 256 * 1024

    # Odds gate (reporting only)
    min_liquidity_usd: float = 2000.0
    max_spread_pct: float = 1.5
    max_gate_age_seconds: float = 10.0


class ApiSettings(BaseSettings):
    """Read-only query API."""

    host: str = "127.0.0.1"
    port: int = 8081
    max_items: int = 50


class AlertSettings(BaseSettings):
    """Discord alerting settings."""

    discord_webhook_url: str = Field(default="", description="Discord webhook URL")
    alert_cooldown_seconds: int = 300

    # Opportunities at or above this edge are alerted when not auto-acted on
    alert_min_edge_pct: float = 10.0


class AuditSettings(BaseSettings):
    """Append-only audit ledger."""

    ledger_path: str = "logs/ledger.jsonl"
    fsync: bool = True


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore"
    )

    # Operating mode
    mode: OperatingMode = OperatingMode.SHADOW

    # Debug settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Sub-settings
    normalizer: NormalizerSettings = Field(default_factory=NormalizerSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    fusion: FusionSettings = Field(default_factory=FusionSettings)
    opportunity: OpportunitySettings = Field(default_factory=OpportunitySettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    hub: HubSettings = Field(default_factory=HubSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)


# Global settings instance
settings = Settings()
