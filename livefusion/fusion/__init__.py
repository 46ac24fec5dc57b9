"""Normalization, match key resolution and the source state store."""

from livefusion.fusion.alias_cache import AliasCache
from livefusion.fusion.normalizer import normalize, normalize_name, normalize_sport
from livefusion.fusion.resolver import MatchKeyResolver
from livefusion.fusion.state_store import SourceStateStore
from livefusion.fusion.sweeper import StalenessSweeper

__all__ = [
    "AliasCache",
    "normalize",
    "normalize_name",
    "normalize_sport",
    "MatchKeyResolver",
    "SourceStateStore",
    "StalenessSweeper",
]
