"""Configuration module."""

from config.settings import (
    settings,
    Settings,
    OperatingMode,
    NormalizerSettings,
    ResolverSettings,
    FusionSettings,
    OpportunitySettings,
    PolicySettings,
    ExecutorSettings,
    HubSettings,
    ApiSettings,
    AlertSettings,
    AuditSettings,
)

__all__ = [
    "settings",
    "Settings",
    "OperatingMode",
    "NormalizerSettings",
    "ResolverSettings",
    "FusionSettings",
    "OpportunitySettings",
    "PolicySettings",
    "ExecutorSettings",
    "HubSettings",
    "ApiSettings",
    "AlertSettings",
    "AuditSettings",
]
