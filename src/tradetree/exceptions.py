"""Custom exceptions for the decision tree trading engine.

All workflow, persistence and execution exceptions live here to avoid
circular imports between modules. The HTTP layer maps each family to a
status code, so new exceptions should subclass the closest family.
"""


class TradeTreeError(Exception):
    """Base exception for all engine errors."""


# Validation


class SignalValidationError(TradeTreeError):
    """Raised when an inbound signal or callback is malformed or incomplete.

    Attributes:
        errors: Itemised reasons the payload was rejected.
        warnings: Soft findings collected before the rejection.
    """

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors) or "invalid signal")


class DuplicateSignalError(SignalValidationError):
    """Raised when a signal's external id has already been processed."""

    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__([f"Signal ID {external_id} already processed"])


# Domain invariants


class DomainInvariantError(TradeTreeError):
    """Raised when an operation would violate the decision tree invariants."""


class UnknownNodeError(DomainInvariantError):
    """Raised when a node id is not part of the decision tree."""


class EdgeUndefinedError(DomainInvariantError):
    """Raised when a non-terminal node has no edge for the given outcome."""


class NodeJumpError(DomainInvariantError):
    """Raised when a transition is not a single edge of the decision tree."""

    def __init__(self, from_node: str, to_node: str) -> None:
        self.from_node = from_node
        self.to_node = to_node
        super().__init__(f"Invalid node jump from {from_node} to {to_node}")


class SessionCompletedError(DomainInvariantError):
    """Raised when an outcome targets a session sitting on a terminal node."""


class ManualConfirmationRequired(DomainInvariantError):
    """Raised when a session is blocked until an operator confirms it."""


class ZeroPriceMoveError(DomainInvariantError):
    """Raised when entry and target prices are equal, leaving nothing to solve."""


# Session lookup and concurrency


class SessionNotFoundError(TradeTreeError):
    """Raised when a session id is unknown to both the store and the cache."""


class SessionBusyError(TradeTreeError):
    """Raised when a signal arrives while the session still has an open trade."""


class TradeNotOpenError(TradeTreeError):
    """Raised when an outcome refers to a trade that is not open on the session."""


# Infrastructure


class TransientInfraError(TradeTreeError):
    """Raised on recoverable infrastructure failures (network, store hiccups)."""


class StoreUnavailableError(TransientInfraError):
    """Raised when the durable store cannot be reached or written."""


class ExecutionError(TradeTreeError):
    """Raised when the venue rejects or fails an order."""


class TransientExecutionError(ExecutionError):
    """Raised when an order failure is worth retrying."""


class PriceUnavailableError(ExecutionError):
    """Raised when a price is unavailable or stale for order execution."""
