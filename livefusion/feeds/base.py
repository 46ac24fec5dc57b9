"""
Per-source feed health. Observability only; nothing here gates ingestion.
"""

import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class FeedHealth:
    """Health status of one feed source."""
    source: str
    connected: bool = False
    last_message_ms: int = 0
    last_heartbeat_ms: int = 0
    message_count: int = 0
    error_count: int = 0
    live_count: int = 0
    odds_count: int = 0
    last_error: str = ""
    stale_after_seconds: float = 60.0

    def record_message(self, kind: str, ok: bool, note: str = "", now: Optional[float] = None) -> None:
        now_ms = int((now if now is not None else time.time()) * 1000)
        self.last_message_ms = now_ms
        self.message_count += 1
        if not ok:
            self.error_count += 1
            self.last_error = note
        elif kind == "heartbeat":
            self.last_heartbeat_ms = now_ms
        elif kind == "live_match":
            self.live_count += 1
        elif kind == "odds":
            self.odds_count += 1

    @property
    def is_stale(self) -> bool:
        """No message for longer than stale_after_seconds."""
        if self.last_message_ms == 0:
            return True
        return self.age_ms > self.stale_after_seconds * 1000

    @property
    def age_ms(self) -> int:
        """Get age of last message in milliseconds."""
        if self.last_message_ms == 0:
            return -1
        return int(time.time() * 1000) - self.last_message_ms

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "connected": self.connected,
            "age_ms": self.age_ms,
            "stale": self.is_stale,
            "messages": self.message_count,
            "errors": self.error_count,
            "live": self.live_count,
            "odds": self.odds_count,
            "last_error": self.last_error,
        }
