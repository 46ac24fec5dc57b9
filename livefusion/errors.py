"""Exception hierarchy."""


class LiveFusionError(Exception):
    """Base error."""


class MalformedObservation(LiveFusionError):
    """Inbound message failed validation or normalization. Dropped, never fatal."""


class AuditLedgerError(LiveFusionError):
    """Audit ledger cannot be written. Decisioning must halt."""


class ExecutorError(LiveFusionError):
    """Executor returned an error response."""


class ExecutorUnavailable(ExecutorError):
    """Executor unreachable after bounded retries."""
