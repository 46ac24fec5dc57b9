"""Utility modules."""

from livefusion.utils.logging import setup_logging, OpportunityJournal
from livefusion.utils.alerts import DiscordAlerter
from livefusion.utils.circuit_breaker import CircuitBreaker

__all__ = [
    "setup_logging",
    "OpportunityJournal",
    "DiscordAlerter",
    "CircuitBreaker",
]
