"""
Discord alerting for the auto-bet engine.

Uses a persistent HTTP client with connection pooling for reliability.
Non-blocking sends so alerting never stalls decisioning. Alerts with the
same key are suppressed within the cooldown window.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from livefusion.models.schemas import BetDecision, ConfidenceTier, Opportunity

logger = structlog.get_logger()


class DiscordAlerter:
    """
    Discord webhook alerter for betting notifications.

    Features:
    - Persistent HTTP client
    - Bounded retries with progressive backoff
    - 429 rate-limit handling
    - Non-blocking sends for critical paths
    - Per-key cooldown
    """

    # Retry settings
    MAX_RETRIES = 3
    RETRY_DELAYS = [1.0, 2.0, 5.0]  # Progressive backoff

    def __init__(self, webhook_url: str, cooldown_seconds: float = 300.0):
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.logger = logger.bind(component="discord_alerter")
        self._rate_limit_until: float = 0
        self._consecutive_failures = 0
        self._last_sent: dict[str, float] = {}

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()
        self._last_success_time: float = 0

        # Stats
        self.sent = 0
        self.failed = 0
        self.suppressed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        async with self._client_lock:
            if self._client is None or self._consecutive_failures >= 3:
                if self._client:
                    try:
                        await self._client.aclose()
                    except httpx.HTTPError:
                        pass

                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(connect=15.0, read=20.0, write=15.0, pool=15.0),
                    limits=httpx.Limits(
                        max_keepalive_connections=3,
                        max_connections=5,
                        keepalive_expiry=30.0,
                    ),
                    verify=True,
                    follow_redirects=True,
                )
                self._consecutive_failures = 0
                self.logger.debug("Created new Discord HTTP client")

            return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            try:
                await self._client.aclose()
            except httpx.HTTPError:
                pass
            self._client = None

    # ==========================================================================
    # Core Methods
    # ==========================================================================

    def _should_send(self, key: Optional[str], now: Optional[float] = None) -> bool:
        """Per-key cooldown. Records the send time when allowed."""
        if key is None:
            return True
        now = now if now is not None else time.time()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            self.suppressed += 1
            return False
        # Keys carry decision ids; drop the ones whose cooldown has lapsed
        self._last_sent = {
            k: ts for k, ts in self._last_sent.items() if now - ts < self.cooldown_seconds
        }
        self._last_sent[key] = now
        return True

    async def _send_with_retry(self, payload: dict, blocking: bool = True) -> bool:
        """
        Send payload to Discord with retry logic.

        Args:
            payload: JSON payload to send
            blocking: If False, fire-and-forget

        Returns:
            True if sent successfully (or scheduled, when non-blocking)
        """
        if not self.webhook_url:
            return False

        if time.time() < self._rate_limit_until:
            return False  # Silent skip when rate limited

        if not blocking:
            asyncio.create_task(self._send_with_retry(payload, blocking=True))
            return True

        for attempt in range(self.MAX_RETRIES):
            try:
                client = await self._get_client()
                response = await client.post(self.webhook_url, json=payload)

                if response.status_code == 429:
                    try:
                        retry_after = float(response.json().get("retry_after", 5))
                    except ValueError:
                        retry_after = 5.0
                    self._rate_limit_until = time.time() + retry_after
                    self.logger.debug("Discord rate limited", retry_after=retry_after)
                    return False

                if response.status_code in (200, 204):
                    self._consecutive_failures = 0
                    self._last_success_time = time.time()
                    self.sent += 1
                    return True

                response.raise_for_status()
                self.sent += 1
                return True

            except (httpx.ConnectTimeout, httpx.ReadTimeout, httpx.ConnectError, httpx.PoolTimeout) as e:
                self._consecutive_failures += 1
                self.logger.debug(
                    "Discord send failed",
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                )
                if attempt < self.MAX_RETRIES - 1:
                    delay = self.RETRY_DELAYS[min(attempt, len(self.RETRY_DELAYS) - 1)]
                    await asyncio.sleep(delay)

            except httpx.HTTPError as e:
                self._consecutive_failures += 1
                self.logger.debug("Discord send error", error=str(e))
                break

        self.failed += 1
        if time.time() - self._last_success_time > 120:
            self.logger.warning(
                "Discord connectivity issues",
                failures=self._consecutive_failures,
            )
        return False

    async def send_message(self, content: str) -> bool:
        """Send a simple text message."""
        return await self._send_with_retry({"content": content})

    async def send_embed(self, embed: dict, key: Optional[str] = None, blocking: bool = False) -> bool:
        """
        Send a rich embed message.

        Args:
            embed: Discord embed object
            key: Cooldown key; repeated keys inside the cooldown are dropped
            blocking: Wait for delivery instead of fire-and-forget
        """
        if not self._should_send(key):
            return False
        embed.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        return await self._send_with_retry({"embeds": [embed]}, blocking=blocking)

    # ==========================================================================
    # Betting Alerts
    # ==========================================================================

    async def send_bet_rejected(self, decision: BetDecision, reason: str, detail: str = "") -> bool:
        """Bet rejected by the executor or not confirmed after submission."""
        opp = decision.opportunity
        embed = {
            "title": "❌ Bet Rejected",
            "color": 0xFF0000,
            "fields": [
                {"name": "Match", "value": str(opp.key), "inline": False},
                {
                    "name": "Bet",
                    "value": (
                        f"**Selection:** {opp.selection}\n"
                        f"**Stake:** {decision.stake:.2f}\n"
                        f"**Odds:** {opp.market_price:.2f}\n"
                        f"**Edge:** {opp.edge_pct:.1f}%"
                    ),
                    "inline": True,
                },
                {"name": "Reason", "value": f"{reason}\n{detail}"[:1000], "inline": True},
            ],
            "footer": {"text": f"Decision: {decision.decision_id[:8]} | Condition: {decision.condition_id[:24]}"},
        }
        return await self.send_embed(embed, key=f"rejected:{decision.decision_id}")

    async def send_opportunity_alert(self, opp: Opportunity, note: str = "not auto-bet") -> bool:
        """High-confidence opportunity the engine did not act on."""
        color = 0x00FF00 if opp.tier in (None, ConfidenceTier.HIGH) else 0xFFFF00
        embed = {
            "title": f"🎯 {opp.kind.value.replace('_', ' ').upper()} {self._get_stars(opp.confidence)}",
            "description": f"**{opp.selection}** @ {opp.market_price:.2f} ({opp.bookmaker})",
            "color": color,
            "fields": [
                {"name": "Match", "value": str(opp.key), "inline": False},
                {
                    "name": "📊 Edge",
                    "value": (
                        f"**Fair:** {opp.fair_probability:.1%}\n"
                        f"**Implied:** {opp.implied_probability:.1%}\n"
                        f"**Edge:** {opp.edge_pct:+.1f}%"
                    ),
                    "inline": True,
                },
                {"name": "Status", "value": note[:1000], "inline": True},
            ],
            "footer": {"text": " | ".join(opp.reasons)[:2000] or opp.opportunity_id[:8]},
        }
        return await self.send_embed(embed, key=f"opp:{opp.key}:{opp.kind.value}:{opp.side}")

    async def send_error_alert(
        self,
        error_type: str,
        message: str,
        details: Optional[str] = None,
    ) -> bool:
        """Send error alert."""
        embed = {
            "title": "⚠️ Error Alert",
            "color": 0xFF0000,
            "fields": [
                {"name": "Type", "value": error_type, "inline": False},
                {"name": "Message", "value": message[:1000], "inline": False},
            ],
        }

        if details:
            embed["fields"].append({"name": "Details", "value": details[:1000], "inline": False})

        return await self.send_embed(embed, key=f"error:{error_type}")

    async def send_circuit_breaker_alert(
        self,
        reason: str,
        action: str = "Auto-betting paused",
    ) -> bool:
        """Send circuit breaker triggered alert."""
        embed = {
            "title": "🚨 Circuit Breaker Triggered",
            "color": 0xFF0000,
            "fields": [
                {"name": "Reason", "value": reason, "inline": False},
                {"name": "Action", "value": action, "inline": False},
            ],
        }
        return await self.send_embed(embed, key=f"breaker:{reason}")

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _get_stars(self, confidence: float) -> str:
        """Get star rating for confidence level."""
        if confidence >= 0.85:
            return "★★★★★"
        elif confidence >= 0.75:
            return "★★★★☆"
        elif confidence >= 0.65:
            return "★★★☆☆"
        elif confidence >= 0.55:
            return "★★☆☆☆"
        else:
            return "★☆☆☆☆"

    def get_metrics(self) -> dict:
        return {
            "enabled": bool(self.webhook_url),
            "sent": self.sent,
            "failed": self.failed,
            "suppressed": self.suppressed,
            "consecutive_failures": self._consecutive_failures,
        }
