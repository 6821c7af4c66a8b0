"""Custom exception hierarchy for the aggregation service."""


class AggregatorError(Exception):
    """Base exception for all aggregation service errors."""


# --- Configuration ---
class ConfigError(AggregatorError):
    """Invalid or missing configuration."""


# --- Domain ---
class DomainError(AggregatorError):
    """Violation of a domain rule."""


class InvalidPeriodError(DomainError):
    """Period start is after its end, or a bound is missing."""


class InadmissibleEventError(DomainError):
    """Event cannot be ledgered (missing or empty id)."""


class ReducerFault(DomainError):
    """A registered reducer raised while folding an event.

    Fatal for that single event: it is not marked processed so the bus
    may redeliver it.
    """

    def __init__(self, routing_key: str, event_id: str | None, cause: Exception):
        self.routing_key = routing_key
        self.event_id = event_id
        self.cause = cause
        super().__init__(
            f"Reducer for {routing_key!r} failed on event {event_id!r}: {cause}"
        )


# --- Infrastructure ---
class InfrastructureError(AggregatorError):
    """Failure in a storage or transport dependency."""


class StoreUnavailable(InfrastructureError):
    """Aggregate store unreachable or timed out."""


class LedgerUnavailable(InfrastructureError):
    """Idempotency ledger unreachable or timed out."""


class ConcurrencyConflict(InfrastructureError):
    """Optimistic update kept losing to concurrent writers."""

    def __init__(self, report_id: str, attempts: int):
        self.report_id = report_id
        self.attempts = attempts
        super().__init__(
            f"Report {report_id} update conflicted {attempts} times"
        )


class ReportNotFoundError(DomainError):
    """No report exists with the given id."""
