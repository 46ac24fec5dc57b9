"""Live fusion data models and schemas."""

from livefusion.models.schemas import (
    Sport,
    MatchKey,
    OddsQuote,
    FusedMatchState,
    Opportunity,
    BetDecision,
    DecisionState,
    LedgerRecord,
    RejectionReason,
    SignalKind,
)

__all__ = [
    "Sport",
    "MatchKey",
    "OddsQuote",
    "FusedMatchState",
    "Opportunity",
    "BetDecision",
    "DecisionState",
    "LedgerRecord",
    "RejectionReason",
    "SignalKind",
]
