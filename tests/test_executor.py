"""Tests for executor clients and the confirmation scheduler."""

import asyncio

import httpx
import orjson
import pytest

from config.settings import ExecutorSettings
from livefusion.errors import ExecutorError, ExecutorUnavailable
from livefusion.models.schemas import BetDecision
from livefusion.trading.confirmation import ConfirmationScheduler
from livefusion.trading.executor import (
    BetState,
    HttpExecutor,
    PaperExecutor,
    to_raw_amount,
    to_raw_odds,
)

BASE_URL = "http://executor.test"


def http_executor(handler) -> HttpExecutor:
    executor = HttpExecutor(ExecutorSettings(base_url=BASE_URL, retry_delays=[0.0, 0.0]))
    executor._client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return executor


@pytest.fixture
def decision(make_opportunity, now):
    opp = make_opportunity("0xabc")
    return BetDecision(
        decision_id="d1",
        opportunity=opp,
        stake=20.0,
        condition_id=opp.condition_id,
        outcome_id=opp.outcome_id,
        min_odds=opp.market_price,
        decided_at=now,
    )


class TestWireUnits:
    """Tests for raw amount and odds encoding."""

    def test_amount(self):
        assert to_raw_amount(20.0) == "20000000"
        assert to_raw_amount(0.1) == "100000"

    def test_odds(self):
        assert to_raw_odds(1.818) == "1818000000000"

    @pytest.mark.parametrize("raw,state", [
        ("Accepted", BetState.ACCEPTED),
        ("accepted", BetState.ACCEPTED),
        ("DRY-RUN", BetState.DRY_RUN),
        ("Pending", BetState.PENDING),
        ("Exploded", BetState.UNKNOWN),
        (None, BetState.UNKNOWN),
    ])
    def test_bet_state_parse(self, raw, state):
        assert BetState.parse(raw) == state

    def test_accepted_states(self):
        assert BetState.ACCEPTED.is_accepted
        assert BetState.DRY_RUN.is_accepted
        assert not BetState.CREATED.is_accepted


class TestHttpExecutor:
    """Tests for HttpExecutor against a mock sidecar."""

    async def test_place_bet(self, decision):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = orjson.loads(request.content)
            return httpx.Response(200, json={"status": "ok", "betId": "bet-7", "state": "Created"})

        executor = http_executor(handler)
        receipt = await executor.place_bet(decision)
        await executor.close()

        assert receipt.bet_id == "bet-7"
        assert receipt.state == BetState.CREATED
        assert seen["path"] == "/bet"
        assert seen["body"]["conditionId"] == "0xabc"
        assert seen["body"]["outcomeId"] == "0xabc:1"
        assert seen["body"]["amount"] == "20000000"

    async def test_error_response_raises(self, decision):
        def handler(request):
            return httpx.Response(400, json={"status": "error", "error": "odds moved"})

        executor = http_executor(handler)
        with pytest.raises(ExecutorError, match="odds moved"):
            await executor.place_bet(decision)

    async def test_server_error_is_unavailable(self, decision):
        executor = http_executor(lambda request: httpx.Response(503, json={}))
        with pytest.raises(ExecutorUnavailable):
            await executor.place_bet(decision)

    async def test_missing_bet_id(self, decision):
        executor = http_executor(lambda request: httpx.Response(200, json={"status": "ok"}))
        with pytest.raises(ExecutorError, match="betId"):
            await executor.place_bet(decision)

    async def test_connect_error_retried_then_unavailable(self, decision):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        executor = http_executor(handler)
        with pytest.raises(ExecutorUnavailable):
            await executor.place_bet(decision)
        assert len(calls) == 3

    async def test_read_timeout_on_post_not_retried(self, decision):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        executor = http_executor(handler)
        with pytest.raises(ExecutorUnavailable):
            await executor.place_bet(decision)
        assert len(calls) == 1

    async def test_bet_status(self):
        executor = http_executor(lambda request: httpx.Response(200, json={"state": "Accepted"}))
        assert await executor.get_bet_status("bet-7") == BetState.ACCEPTED
        assert await executor.get_bet_status("dry-1") == BetState.DRY_RUN

    @pytest.mark.parametrize("status,body,is_open", [
        (200, {"state": "Active"}, True),
        (200, {"state": "Stopped"}, False),
        (404, {}, False),
    ])
    async def test_market_status(self, status, body, is_open):
        executor = http_executor(lambda request: httpx.Response(status, json=body))
        assert (await executor.market_status("0xabc")).open is is_open

    async def test_market_status_error(self):
        executor = http_executor(lambda request: httpx.Response(500, json={}))
        with pytest.raises(ExecutorError):
            await executor.market_status("0xabc")


class TestConfirmationScheduler:
    """Tests for the single delayed status check."""

    async def test_reports_state_once(self):
        results = []

        async def on_result(decision_id, state, detail):
            results.append((decision_id, state, detail))

        executor = PaperExecutor(confirm_state=BetState.ACCEPTED)
        scheduler = ConfirmationScheduler(executor, on_result, delay_seconds=0.0)
        await scheduler.schedule("d1", "bet-1")

        assert results == [("d1", BetState.ACCEPTED, "Accepted")]
        assert executor.status_requests == 1
        assert scheduler.pending == []

    async def test_timeout_reports_none(self):
        results = []

        class Hanging(PaperExecutor):
            async def get_bet_status(self, bet_id):
                await asyncio.sleep(5)

        async def on_result(decision_id, state, detail):
            results.append((state, detail))

        scheduler = ConfirmationScheduler(Hanging(), on_result, delay_seconds=0.0, timeout_seconds=0.05)
        await scheduler.schedule("d1", "bet-1")
        assert results == [(None, "status check timed out after 0s")]

    async def test_cancel(self):
        async def on_result(*args):
            raise AssertionError("should not report")

        scheduler = ConfirmationScheduler(PaperExecutor(), on_result, delay_seconds=60.0)
        scheduler.schedule("d1", "bet-1")
        assert scheduler.cancel("d1")
        assert not scheduler.cancel("d1")
        await asyncio.sleep(0)
        assert scheduler.pending == []

    async def test_stopped_refuses_new_polls(self):
        async def on_result(*args):
            return None

        scheduler = ConfirmationScheduler(PaperExecutor(), on_result, delay_seconds=60.0)
        scheduler.schedule("d1", "bet-1")
        await scheduler.stop()
        with pytest.raises(RuntimeError):
            scheduler.schedule("d2", "bet-2")
