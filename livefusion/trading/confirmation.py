"""
Confirmation scheduler.

One task per submitted decision: wait a fixed delay, ask the executor for
the bet state exactly once under a timeout, report the result. No retry
loop. Pending polls are cancelled explicitly on shutdown; a cancelled
decision stays inflight and is rescheduled after restart from the ledger.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from livefusion.errors import ExecutorError
from livefusion.trading.executor import BetState, Executor

logger = structlog.get_logger()

# (decision_id, bet state or None on failure, detail)
ConfirmationCallback = Callable[[str, Optional[BetState], str], Awaitable[None]]


class ConfirmationScheduler:
    """Owns the delayed single-check confirmation polls."""

    def __init__(
        self,
        executor: Executor,
        on_result: ConfirmationCallback,
        delay_seconds: float = 15.0,
        timeout_seconds: float = 10.0,
    ):
        self.executor = executor
        self.on_result = on_result
        self.delay_seconds = delay_seconds
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(component="confirmation_scheduler")

        self._tasks: dict[str, asyncio.Task] = {}
        self._stopped = False

        # Stats
        self.scheduled_total = 0
        self.confirmed_total = 0
        self.failed_total = 0

    def schedule(self, decision_id: str, bet_id: str, delay_seconds: Optional[float] = None) -> asyncio.Task:
        """Start the poll for one decision. Replaces any earlier poll for it."""
        if self._stopped:
            raise RuntimeError("confirmation scheduler is stopped")

        self.cancel(decision_id)
        delay = self.delay_seconds if delay_seconds is None else delay_seconds
        task = asyncio.create_task(
            self._poll(decision_id, bet_id, delay),
            name=f"confirm-{decision_id}",
        )
        self._tasks[decision_id] = task
        self.scheduled_total += 1
        return task

    def cancel(self, decision_id: str) -> bool:
        task = self._tasks.pop(decision_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def stop(self) -> None:
        """Cancel every pending poll and wait for them to unwind."""
        self._stopped = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("Pending confirmation polls cancelled", count=len(tasks))

    @property
    def pending(self) -> list[str]:
        return [d for d, t in self._tasks.items() if not t.done()]

    async def _poll(self, decision_id: str, bet_id: str, delay: float) -> None:
        state: Optional[BetState] = None
        detail = ""
        try:
            await asyncio.sleep(delay)
            try:
                state = await asyncio.wait_for(
                    self.executor.get_bet_status(bet_id),
                    timeout=self.timeout_seconds,
                )
                detail = state.value
            except asyncio.TimeoutError:
                detail = f"status check timed out after {self.timeout_seconds:.0f}s"
            except ExecutorError as e:
                detail = f"status check failed: {e}"

            if state is not None and state.is_accepted:
                self.confirmed_total += 1
            else:
                self.failed_total += 1

            self.logger.info(
                "Confirmation poll complete",
                decision_id=decision_id,
                bet_id=bet_id,
                state=state.value if state else None,
                detail=detail,
            )
            await self.on_result(decision_id, state, detail)
        finally:
            if self._tasks.get(decision_id) is asyncio.current_task():
                self._tasks.pop(decision_id, None)

    def get_metrics(self) -> dict:
        return {
            "pending": len(self.pending),
            "scheduled_total": self.scheduled_total,
            "confirmed_total": self.confirmed_total,
            "failed_total": self.failed_total,
            "delay_seconds": self.delay_seconds,
            "timeout_seconds": self.timeout_seconds,
        }
