"""
Circuit Breaker for auto-bet risk management.

Two trips:
- daily loss: halts auto-betting once max(0, wagered - returned) exceeds the
  limit, latched until the next midnight UTC
- loss streak: N consecutive terminal losses suspend auto-betting for a
  fixed cooldown window
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Callable, Awaitable

import structlog

logger = structlog.get_logger()

TRIP_DAILY_LOSS = "daily_loss"
TRIP_LOSS_STREAK = "loss_streak"
TRIP_MANUAL = "manual"


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass
class CircuitBreakerState:
    """
    Current state of the circuit breaker.

    The daily latch and the streak cooldown are independent: a midnight
    rollover clears only the latch.
    """
    daily_tripped: bool = False
    trip_kind: str = ""
    trip_time: Optional[datetime] = None
    trip_reason: str = ""
    cooldown_until: Optional[float] = None
    trips_today: int = 0
    last_reset: datetime = None

    def __post_init__(self):
        if self.last_reset is None:
            self.last_reset = datetime.now(timezone.utc)

    @property
    def is_tripped(self) -> bool:
        return self.daily_tripped or self.cooldown_until is not None


class CircuitBreaker:
    """
    Auto-bet circuit breaker.

    Features:
    - Daily loss limit (absolute, latched for the rest of the UTC day)
    - Loss-streak cooldown, armed regardless of the daily latch
    - Automatic midnight UTC reset of the daily latch
    - Alert callback on trip
    """

    def __init__(
        self,
        daily_loss_limit: float = 30.0,
        loss_streak_limit: int = 3,
        cooldown_seconds: float = 1800.0,
        on_trip_callback: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.daily_loss_limit = daily_loss_limit
        self.loss_streak_limit = loss_streak_limit
        self.cooldown_seconds = cooldown_seconds
        self.on_trip_callback = on_trip_callback

        self.state = CircuitBreakerState()
        self.logger = logger.bind(component="circuit_breaker")

        self.logger.info(
            "Circuit breaker initialized",
            daily_loss_limit=f"{daily_loss_limit:.2f}",
            loss_streak_limit=loss_streak_limit,
            cooldown_seconds=cooldown_seconds,
        )

    def _should_reset_daily(self, now: float) -> bool:
        """Check if we should reset daily state (midnight UTC)."""
        return _utc(now).date() > self.state.last_reset.date()

    def _reset_daily(self, now: float) -> None:
        """Reset the daily-loss latch. A running streak cooldown survives."""
        self.state.last_reset = _utc(now)
        self.state.trips_today = 0

        if self.state.daily_tripped:
            self.state.daily_tripped = False
            if self.state.cooldown_until is not None:
                self.state.trip_kind = TRIP_LOSS_STREAK
            else:
                self._clear_trip_info()
            self.logger.info("Daily loss latch reset after rollover")

    def _clear_trip_info(self) -> None:
        self.state.trip_kind = ""
        self.state.trip_time = None
        self.state.trip_reason = ""

    # =========================================================================
    # Checks
    # =========================================================================

    def daily_loss_exceeded(self, wagered: float, returned: float, now: Optional[float] = None) -> bool:
        """True when today's net loss is over the limit. Trips (and latches) on first hit."""
        now = now if now is not None else time.time()
        if self._should_reset_daily(now):
            self._reset_daily(now)

        if self.state.daily_tripped:
            return True

        net_loss = max(0.0, wagered - returned)
        if net_loss > self.daily_loss_limit:
            self.state.daily_tripped = True
            self._trip(
                TRIP_DAILY_LOSS,
                f"Daily loss limit exceeded: {net_loss:.2f} > {self.daily_loss_limit:.2f}",
                now,
            )
            return True
        return False

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        """True while a loss-streak cooldown is running."""
        now = now if now is not None else time.time()
        if self.state.cooldown_until is None:
            return False

        if now < self.state.cooldown_until:
            return True

        self.logger.info("Loss streak cooldown complete, auto-betting resumed")
        self.state.cooldown_until = None
        if not self.state.daily_tripped:
            self._clear_trip_info()
        return False

    def record_loss_streak(self, streak: int, now: Optional[float] = None) -> bool:
        """
        Record the current consecutive-loss count.

        Returns:
            True if this armed the loss-streak cooldown
        """
        now = now if now is not None else time.time()
        if streak < self.loss_streak_limit or self.in_cooldown(now):
            return False

        self.state.cooldown_until = now + self.cooldown_seconds
        self._trip(TRIP_LOSS_STREAK, f"{streak} consecutive losses", now)
        return True

    # =========================================================================
    # Trip / reset
    # =========================================================================

    def _trip(self, kind: str, reason: str, now: float) -> None:
        """Trip the circuit breaker."""
        self.state.trip_kind = kind
        self.state.trip_time = _utc(now)
        self.state.trip_reason = reason
        self.state.trips_today += 1

        self.logger.critical(
            "🚨 CIRCUIT BREAKER TRIPPED",
            kind=kind,
            reason=reason,
            cooldown=f"{self.cooldown_seconds / 60:.0f} min" if kind == TRIP_LOSS_STREAK else "until midnight UTC",
        )

        if self.on_trip_callback:
            try:
                asyncio.get_running_loop().create_task(self.on_trip_callback(reason))
            except RuntimeError:
                # No running loop (sync replay/tests): nothing to notify
                pass

    def manual_trip(self, reason: str = "Manual trip", now: Optional[float] = None) -> None:
        """Manually trip the circuit breaker (latched until midnight UTC)."""
        self.state.daily_tripped = True
        self._trip(TRIP_MANUAL, reason, now if now is not None else time.time())

    def manual_reset(self) -> None:
        """Manually reset the circuit breaker, cooldown included."""
        self.state.daily_tripped = False
        self.state.cooldown_until = None
        self._clear_trip_info()
        self.logger.info("Circuit breaker manually reset")

    def get_status(self, now: Optional[float] = None) -> dict:
        """Get current circuit breaker status."""
        now = now if now is not None else time.time()
        remaining_cooldown = 0.0
        if self.state.cooldown_until is not None:
            remaining_cooldown = max(0.0, self.state.cooldown_until - now)

        return {
            "is_tripped": self.state.daily_tripped or remaining_cooldown > 0,
            "daily_tripped": self.state.daily_tripped,
            "trip_kind": self.state.trip_kind,
            "trip_reason": self.state.trip_reason,
            "trip_time": self.state.trip_time.isoformat() if self.state.trip_time else None,
            "trips_today": self.state.trips_today,
            "daily_loss_limit": self.daily_loss_limit,
            "loss_streak_limit": self.loss_streak_limit,
            "remaining_cooldown_seconds": remaining_cooldown,
            "last_reset": self.state.last_reset.isoformat() if self.state.last_reset else None,
        }
