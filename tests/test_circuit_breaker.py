"""Tests for the circuit breaker and Discord alerting."""

import asyncio
import time

import httpx
import orjson
import pytest

from livefusion.utils.alerts import DiscordAlerter
from livefusion.utils.circuit_breaker import TRIP_DAILY_LOSS, TRIP_LOSS_STREAK, CircuitBreaker

DAY = 86400.0


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_daily_loss_latches(self, now):
        breaker = CircuitBreaker(daily_loss_limit=30.0)
        assert not breaker.daily_loss_exceeded(40.0, 15.0, now)
        assert breaker.daily_loss_exceeded(40.0, 5.0, now)
        # Latched even after winnings come back in
        assert breaker.daily_loss_exceeded(40.0, 40.0, now)
        assert breaker.state.trip_kind == TRIP_DAILY_LOSS

    def test_daily_loss_resets_next_utc_day(self, now):
        breaker = CircuitBreaker(daily_loss_limit=30.0)
        breaker.daily_loss_exceeded(50.0, 0.0, now)
        assert not breaker.daily_loss_exceeded(0.0, 0.0, now + DAY)
        assert not breaker.state.is_tripped

    def test_loss_streak_cooldown(self, now):
        breaker = CircuitBreaker(loss_streak_limit=3, cooldown_seconds=1800.0)
        assert not breaker.record_loss_streak(2, now)
        assert breaker.record_loss_streak(3, now)
        assert breaker.state.trip_kind == TRIP_LOSS_STREAK
        assert breaker.in_cooldown(now + 1799)
        assert not breaker.in_cooldown(now + 1801)
        assert not breaker.state.is_tripped

    def test_streak_cooldown_survives_rollover(self, now):
        midnight = (int(now) // DAY + 1) * DAY
        breaker = CircuitBreaker(daily_loss_limit=30.0, cooldown_seconds=1800.0)
        assert breaker.record_loss_streak(3, midnight - 600)
        assert breaker.daily_loss_exceeded(50.0, 0.0, midnight - 500)

        assert not breaker.daily_loss_exceeded(0.0, 0.0, midnight + 300)
        assert breaker.in_cooldown(midnight + 300)
        assert breaker.state.trip_kind == TRIP_LOSS_STREAK

    def test_streak_arms_cooldown_while_daily_latched(self, now):
        midnight = (int(now) // DAY + 1) * DAY
        breaker = CircuitBreaker(daily_loss_limit=30.0, cooldown_seconds=1800.0)
        assert breaker.daily_loss_exceeded(50.0, 0.0, midnight - 600)
        assert breaker.record_loss_streak(3, midnight - 500)

        assert not breaker.daily_loss_exceeded(0.0, 0.0, midnight + 300)
        assert breaker.in_cooldown(midnight + 300)
        assert not breaker.in_cooldown(midnight + 1301)
        assert not breaker.state.is_tripped

    def test_manual_trip_and_reset(self, now):
        breaker = CircuitBreaker()
        breaker.manual_trip("operator", now)
        assert breaker.daily_loss_exceeded(0.0, 0.0, now)
        breaker.manual_reset()
        assert not breaker.daily_loss_exceeded(0.0, 0.0, now)

    async def test_trip_callback(self, now):
        reasons = []

        async def on_trip(reason):
            reasons.append(reason)

        breaker = CircuitBreaker(daily_loss_limit=10.0, on_trip_callback=on_trip)
        breaker.daily_loss_exceeded(25.0, 0.0, now)
        await asyncio.sleep(0)
        assert reasons == ["Daily loss limit exceeded: 25.00 > 10.00"]

    def test_status(self, now):
        breaker = CircuitBreaker(cooldown_seconds=600.0)
        breaker.record_loss_streak(3, now)
        status = breaker.get_status(now + 100)
        assert status["is_tripped"]
        assert status["remaining_cooldown_seconds"] == pytest.approx(500.0)


def alerter(handler, cooldown_seconds: float = 300.0) -> DiscordAlerter:
    alerts = DiscordAlerter("https://discord.test/webhook", cooldown_seconds=cooldown_seconds)
    alerts._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return alerts


class TestDiscordAlerter:
    """Tests for DiscordAlerter against a mock webhook."""

    async def test_send_message(self):
        payloads = []

        def handler(request):
            payloads.append(orjson.loads(request.content))
            return httpx.Response(204)

        alerts = alerter(handler)
        assert await alerts.send_message("hello")
        assert payloads == [{"content": "hello"}]
        assert alerts.sent == 1

    async def test_same_key_suppressed_within_cooldown(self):
        alerts = alerter(lambda request: httpx.Response(204))
        assert await alerts.send_embed({"title": "x"}, key="k", blocking=True)
        assert not await alerts.send_embed({"title": "x"}, key="k", blocking=True)
        assert await alerts.send_embed({"title": "y"}, key="other", blocking=True)
        assert alerts.suppressed == 1

    def test_lapsed_cooldown_keys_pruned(self):
        alerts = DiscordAlerter("https://discord.test/webhook", cooldown_seconds=60.0)
        for i in range(50):
            assert alerts._should_send(f"rejected:d{i}", now=1000.0 + i)
        assert alerts._should_send("rejected:late", now=1200.0)
        assert list(alerts._last_sent) == ["rejected:late"]

    async def test_rate_limited(self):
        alerts = alerter(lambda request: httpx.Response(429, json={"retry_after": 30}))
        assert not await alerts.send_message("hello")
        assert alerts._rate_limit_until > time.time() + 20
        assert not await alerts.send_message("again")

    async def test_no_webhook(self):
        assert not await DiscordAlerter("").send_message("hello")

    async def test_opportunity_alert(self, make_opportunity):
        payloads = []

        def handler(request):
            payloads.append(orjson.loads(request.content))
            return httpx.Response(204)

        alerts = alerter(handler)
        opp = make_opportunity()
        opp.reasons = ["score 1-0", "model 78%"]
        assert await alerts.send_opportunity_alert(opp, "exposure cap")
        for _ in range(50):
            if payloads:
                break
            await asyncio.sleep(0.01)

        [payload] = payloads
        [embed] = payload["embeds"]
        assert embed["footer"]["text"] == "score 1-0 | model 78%"
        assert embed["fields"][2]["value"] == "exposure cap"
