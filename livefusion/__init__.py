"""
LiveFusion: live sports feed fusion and auto-bet engine.

Architecture:
- fusion/: normalization, match key resolution, per-match state, sweeping
- engine/: sport fair-probability models, opportunity and decision engines
- trading/: risk ledger, audit ledger, executor client, confirmation polling
- feeds/: WebSocket feed hub and ingest pipeline
- api/: read-only query endpoints
"""

__version__ = "0.1.0"
