"""Sport models, opportunity detection and auto-bet decisioning."""

from livefusion.engine.sport_models import SportModel, fair_probability
from livefusion.engine.opportunity import OpportunityEngine
from livefusion.engine.decision import AutoBetDecisionEngine

__all__ = [
    "SportModel",
    "fair_probability",
    "OpportunityEngine",
    "AutoBetDecisionEngine",
]
