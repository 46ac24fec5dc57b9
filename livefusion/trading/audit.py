"""
Append-only audit ledger.

One JSON line per decision state transition. Records are never rewritten
or deleted; the file is the source of truth for after-the-fact audit and
for rebuilding RiskState on restart.

A write failure raises AuditLedgerError. Callers treat that as fatal for
decisioning: no bet may be placed without its record.
"""

import os
import re
import threading
import time
from pathlib import Path
from typing import Iterator, Optional

import orjson
import structlog

from livefusion.errors import AuditLedgerError
from livefusion.models.schemas import (
    BetDecision,
    DecisionState,
    LedgerRecord,
    SettlementResult,
)

logger = structlog.get_logger()

_SEQ_RE = re.compile(rb'"seq":\s*(\d+)')


class AuditLedger:
    """JSONL audit ledger with durable appends."""

    def __init__(self, path: str = "logs/ledger.jsonl", fsync: bool = True):
        self.path = Path(path)
        self.fsync = fsync
        self.logger = logger.bind(component="audit_ledger")
        self._lock = threading.Lock()
        self._file_handle = None

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._seq = self._highest_seq()
            torn_tail = self._has_torn_tail()
            self._file_handle = open(self.path, "ab")
            if torn_tail:
                self._file_handle.write(b"\n")
                self._file_handle.flush()
        except OSError as e:
            raise AuditLedgerError(f"cannot open audit ledger {self.path}: {e}") from e

        self.logger.info("Audit ledger opened", path=str(self.path), seq=self._seq)

    def _highest_seq(self) -> int:
        """Highest seq on disk, including one still legible in a damaged line."""
        highest = max((r.seq for r in self.iter_records()), default=0)
        if self.path.exists():
            for match in _SEQ_RE.finditer(self.path.read_bytes()):
                highest = max(highest, int(match.group(1)))
        return highest

    def _has_torn_tail(self) -> bool:
        """True when the file ends mid-record (no trailing newline)."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with open(self.path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"

    # =========================================================================
    # Writes
    # =========================================================================

    def append(
        self,
        decision_id: str,
        transition: DecisionState,
        condition_id: str,
        ts: Optional[float] = None,
        **fields,
    ) -> LedgerRecord:
        """Durably append one record. Raises AuditLedgerError on any failure."""
        with self._lock:
            if self._file_handle is None:
                raise AuditLedgerError("audit ledger is closed")

            record = LedgerRecord(
                seq=self._seq + 1,
                ts=ts if ts is not None else time.time(),
                decision_id=decision_id,
                transition=transition,
                condition_id=condition_id,
                **fields,
            )
            try:
                self._file_handle.write(orjson.dumps(record.to_dict()) + b"\n")
                self._file_handle.flush()
                if self.fsync:
                    os.fsync(self._file_handle.fileno())
            except (OSError, ValueError) as e:
                self.logger.critical("🚨 AUDIT LEDGER WRITE FAILED", error=str(e), path=str(self.path))
                raise AuditLedgerError(f"audit ledger write failed: {e}") from e

            self._seq = record.seq

        self.logger.debug(
            "ledger_record",
            seq=record.seq,
            decision_id=decision_id,
            transition=transition.value,
            condition_id=condition_id,
        )
        return record

    def record_decision(
        self,
        decision: BetDecision,
        transition: DecisionState,
        reason: Optional[str] = None,
        settlement: Optional[SettlementResult] = None,
        payout: float = 0.0,
    ) -> LedgerRecord:
        """Append a record describing `decision` at `transition`."""
        return self.append(
            decision_id=decision.decision_id,
            transition=transition,
            condition_id=decision.condition_id,
            outcome_id=decision.outcome_id,
            match_key=decision.match_key,
            sport=decision.sport,
            stake=decision.stake,
            price=decision.opportunity.market_price,
            edge_pct=decision.opportunity.edge_pct,
            reason=reason,
            external_id=decision.external_id,
            settlement=settlement,
            payout=payout,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def iter_records(self) -> Iterator[LedgerRecord]:
        """Read back every record. A torn final line is skipped."""
        if not self.path.exists():
            return
        with open(self.path, "rb") as f:
            offset = 0
            for line_no, raw in enumerate(f, start=1):
                line = raw.strip()
                line_offset = offset
                offset += len(raw)
                if not line:
                    continue
                try:
                    yield LedgerRecord.from_dict(orjson.loads(line))
                except (orjson.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    self.logger.warning(
                        "Skipping unreadable ledger line",
                        line=line_no,
                        offset=line_offset,
                        length=len(raw),
                        error=str(e),
                    )

    def records(self) -> list[LedgerRecord]:
        return list(self.iter_records())

    def records_for(self, decision_id: str) -> list[LedgerRecord]:
        return [r for r in self.iter_records() if r.decision_id == decision_id]

    @property
    def seq(self) -> int:
        return self._seq

    def close(self) -> None:
        """Close file handle."""
        with self._lock:
            if self._file_handle:
                self._file_handle.close()
                self._file_handle = None
