"""
Bet execution and bookkeeping.

- audit: append-only decision ledger
- risk: exposure accounting and risk checks
- executor: external bet executor client (HTTP + paper)
- confirmation: scheduled confirmation polls
"""

from livefusion.trading.audit import AuditLedger
from livefusion.trading.confirmation import ConfirmationScheduler
from livefusion.trading.executor import BetState, HttpExecutor, PaperExecutor
from livefusion.trading.risk import RiskLedger, RiskState

__all__ = [
    "AuditLedger",
    "ConfirmationScheduler",
    "BetState",
    "HttpExecutor",
    "PaperExecutor",
    "RiskLedger",
    "RiskState",
]
