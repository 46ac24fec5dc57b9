"""
Bet executor clients.

HttpExecutor talks to the executor sidecar:

    POST /bet            {conditionId, outcomeId, amount, minOdds}
                         -> {status: "ok", betId, state}
    GET  /bet/{id}       -> {state, ...}
    GET  /condition/{id} -> {state: "Active" | "Stopped" | "Resolved" | ...}

amount is the stake in 6-decimal raw units, minOdds is decimal odds x 1e12,
both sent as strings.

PaperExecutor accepts everything locally. Used in shadow mode and tests.
"""

import asyncio
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

import certifi
import httpx
import structlog

from config.settings import ExecutorSettings
from livefusion.errors import ExecutorError, ExecutorUnavailable
from livefusion.models.schemas import BetDecision

logger = structlog.get_logger()

AMOUNT_DECIMALS = 6
ODDS_SCALE = 10**12


class BetState(str, Enum):
    ACCEPTED = "Accepted"
    CREATED = "Created"
    PENDING = "Pending"
    REJECTED = "Rejected"
    DRY_RUN = "DRY-RUN"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BetState":
        for state in cls:
            if state.value.lower() == (value or "").lower():
                return state
        return cls.UNKNOWN

    @property
    def is_accepted(self) -> bool:
        return self in (BetState.ACCEPTED, BetState.DRY_RUN)


@dataclass
class BetReceipt:
    """Executor response to a placement."""
    bet_id: str
    state: BetState
    error: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class MarketStatus:
    condition_id: str
    open: bool
    state: str = ""


def to_raw_amount(stake: float) -> str:
    return str(int(round(stake * 10**AMOUNT_DECIMALS)))


def to_raw_odds(odds: float) -> str:
    return str(int(round(odds * ODDS_SCALE)))


class Executor(Protocol):
    """What the decision engine needs from an executor."""

    async def place_bet(self, decision: BetDecision) -> BetReceipt: ...

    async def get_bet_status(self, bet_id: str) -> BetState: ...

    async def market_status(self, condition_id: str) -> MarketStatus: ...

    async def close(self) -> None: ...


class HttpExecutor:
    """
    httpx client for the executor sidecar.

    Features:
    - Persistent client with certifi CA bundle
    - Bounded retries with progressive backoff
    - POST /bet retried only when the request never reached the sidecar
    """

    def __init__(self, config: Optional[ExecutorSettings] = None):
        self.config = config or ExecutorSettings()
        self.base_url = self.config.base_url.rstrip("/")
        self.retry_delays = list(self.config.retry_delays) or [1.0]
        self.logger = logger.bind(component="http_executor")

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

        # Stats
        self.bets_placed = 0
        self.bets_failed = 0
        self.requests_failed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        async with self._client_lock:
            if self._client is None:
                ssl_context = ssl.create_default_context(cafile=certifi.where())
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=httpx.Timeout(self.config.request_timeout_seconds),
                    verify=ssl_context,
                )
            return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, idempotent: bool, **kwargs) -> httpx.Response:
        """
        Send with bounded retries. Raises ExecutorUnavailable once retries
        are exhausted.
        """
        retryable = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
        if idempotent:
            retryable = retryable + (httpx.ReadTimeout, httpx.RemoteProtocolError)

        last_error: Optional[Exception] = None
        for attempt in range(len(self.retry_delays) + 1):
            try:
                client = await self._get_client()
                return await client.request(method, path, **kwargs)
            except retryable as e:
                last_error = e
                self.requests_failed += 1
                self.logger.debug(
                    "Executor request failed",
                    path=path,
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                )
                if attempt < len(self.retry_delays):
                    await asyncio.sleep(self.retry_delays[attempt])
            except httpx.HTTPError as e:
                self.requests_failed += 1
                raise ExecutorUnavailable(f"{method} {path}: {type(e).__name__}: {e}") from e

        raise ExecutorUnavailable(f"{method} {path}: {type(last_error).__name__}: {last_error}")

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # =========================================================================
    # Operations
    # =========================================================================

    async def place_bet(self, decision: BetDecision) -> BetReceipt:
        payload = {
            "conditionId": decision.condition_id,
            "outcomeId": decision.outcome_id,
            "amount": to_raw_amount(decision.stake),
            "minOdds": to_raw_odds(decision.min_odds),
            "team1": decision.opportunity.key.team1,
            "team2": decision.opportunity.key.team2,
        }
        response = await self._request("POST", "/bet", idempotent=False, json=payload)
        data = self._json(response)

        if response.status_code >= 500 and response.status_code != 501:
            self.bets_failed += 1
            raise ExecutorUnavailable(f"executor error {response.status_code}: {data.get('error', '')}")
        if response.status_code >= 400 or data.get("status") != "ok":
            self.bets_failed += 1
            raise ExecutorError(data.get("error") or f"HTTP {response.status_code}")

        receipt = BetReceipt(
            bet_id=str(data.get("betId", "")),
            state=BetState.parse(data.get("state")),
            error=data.get("error"),
            raw=data,
        )
        if not receipt.bet_id:
            self.bets_failed += 1
            raise ExecutorError("executor response missing betId")

        self.bets_placed += 1
        self.logger.info(
            "🎰 Bet sent to executor",
            decision_id=decision.decision_id,
            bet_id=receipt.bet_id,
            state=receipt.state.value,
            amount=payload["amount"],
            min_odds=payload["minOdds"],
        )
        return receipt

    async def get_bet_status(self, bet_id: str) -> BetState:
        if bet_id.startswith("dry-"):
            return BetState.DRY_RUN
        response = await self._request("GET", f"/bet/{bet_id}", idempotent=True)
        if response.status_code >= 400:
            raise ExecutorError(f"bet status HTTP {response.status_code}")
        return BetState.parse(self._json(response).get("state"))

    async def market_status(self, condition_id: str) -> MarketStatus:
        response = await self._request("GET", f"/condition/{condition_id}", idempotent=True)
        if response.status_code == 404:
            return MarketStatus(condition_id=condition_id, open=False, state="NotFound")
        if response.status_code >= 400:
            raise ExecutorError(f"condition status HTTP {response.status_code}")
        state = str(self._json(response).get("state", ""))
        return MarketStatus(condition_id=condition_id, open=state.lower() == "active", state=state)

    def get_metrics(self) -> dict:
        return {
            "base_url": self.base_url,
            "bets_placed": self.bets_placed,
            "bets_failed": self.bets_failed,
            "requests_failed": self.requests_failed,
        }


class PaperExecutor:
    """In-process executor: every bet is accepted, every market is open."""

    def __init__(
        self,
        bet_state: BetState = BetState.DRY_RUN,
        confirm_state: Optional[BetState] = None,
        closed_conditions: Optional[set[str]] = None,
    ):
        self.bet_state = bet_state
        self.confirm_state = confirm_state or bet_state
        self.closed_conditions = closed_conditions if closed_conditions is not None else set()
        self.logger = logger.bind(component="paper_executor")
        self.placed: list[BetDecision] = []
        self.status_requests = 0

    async def place_bet(self, decision: BetDecision) -> BetReceipt:
        bet_id = f"dry-{int(time.time() * 1000)}-{len(self.placed)}"
        self.placed.append(decision)
        self.logger.info(
            "🧪 PAPER BET",
            decision_id=decision.decision_id,
            bet_id=bet_id,
            condition_id=decision.condition_id,
            outcome_id=decision.outcome_id,
            stake=f"{decision.stake:.2f}",
            min_odds=f"{decision.min_odds:.3f}",
        )
        return BetReceipt(bet_id=bet_id, state=self.bet_state)

    async def get_bet_status(self, bet_id: str) -> BetState:
        self.status_requests += 1
        return self.confirm_state

    async def market_status(self, condition_id: str) -> MarketStatus:
        is_open = condition_id not in self.closed_conditions
        return MarketStatus(condition_id=condition_id, open=is_open, state="Active" if is_open else "Stopped")

    async def close(self) -> None:
        return None

    def get_metrics(self) -> dict:
        return {"bets_placed": len(self.placed), "status_requests": self.status_requests}
