"""
Logging setup and the daily opportunity journal.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import orjson
import structlog
from structlog.processors import JSONRenderer, TimeStamper

from livefusion.models.schemas import DecisionOutcome, Opportunity


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> None:
    """
    Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            TimeStamper(fmt="iso", utc=True),
            JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class OpportunityJournal:
    """
    Daily JSONL journal of emitted opportunities and their decision outcomes.
    Analysis aid only; the audit ledger is the record of bets.
    """

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = structlog.get_logger("opportunity_journal")

        self._current_date: Optional[str] = None
        self._current_file: Optional[Path] = None
        self._file_handle = None
        self._seen: set[str] = set()

    def _get_log_file(self) -> Path:
        """Get current day's log file, rotating if needed."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        if today != self._current_date:
            if self._file_handle:
                self._file_handle.close()

            self._current_date = today
            self._current_file = self.log_dir / f"opportunities_{today}.jsonl"
            self._file_handle = open(self._current_file, "ab")
            self._seen.clear()

        return self._current_file

    def _write(self, entry: dict) -> None:
        self._get_log_file()
        self._file_handle.write(orjson.dumps(entry) + b"\n")
        self._file_handle.flush()

    def log_opportunity(self, opp: Opportunity) -> bool:
        """Journal an opportunity once per (match, kind, side, price) per day."""
        self._get_log_file()
        fingerprint = f"{opp.key}|{opp.kind.value}|{opp.side}|{opp.market_price:.3f}|{opp.source}"
        if fingerprint in self._seen:
            return False
        self._seen.add(fingerprint)
        self._write({"type": "opportunity", **opp.to_log()})
        return True

    def log_outcome(self, outcome: DecisionOutcome) -> None:
        """Journal a decision outcome (rejections included)."""
        decision = outcome.decision
        entry = {
            "type": "decision",
            "ts": datetime.now(timezone.utc).isoformat(),
            "status": outcome.status,
            "reason": outcome.reason.value if outcome.reason else None,
            "detail": outcome.detail,
        }
        if decision is not None:
            entry.update({
                "decision_id": decision.decision_id,
                "opportunity_id": decision.opportunity.opportunity_id,
                "match_key": decision.match_key,
                "condition_id": decision.condition_id,
                "stake": decision.stake,
                "min_odds": decision.min_odds,
                "external_id": decision.external_id,
            })
        self._write(entry)
        self.logger.debug("decision_logged", status=outcome.status, reason=entry["reason"])

    def close(self) -> None:
        """Close log file handle."""
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
