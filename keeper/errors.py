"""Error taxonomy shared across the keeper."""
from __future__ import annotations


class KeeperError(Exception):
    """Base class for all keeper errors."""


class ConfigurationError(KeeperError, ValueError):
    """Invalid or missing configuration. Fatal at construction, never retried."""


class PriceUnavailableError(KeeperError):
    """No reference price for the requested timestamp."""


class SimulationError(KeeperError):
    """A ledger call would revert (or did revert on inclusion)."""


class TransactionRevertedError(SimulationError):
    """A submitted transaction was included but reverted."""

    def __init__(self, message: str, transaction_hash: str = "") -> None:
        super().__init__(message)
        self.transaction_hash = transaction_hash


class TransportError(KeeperError):
    """Transient network or inclusion failure.

    ``transaction_hash`` is set when the transaction was broadcast but its
    inclusion could not be confirmed.
    """

    def __init__(self, message: str, transaction_hash: str = "") -> None:
        super().__init__(message)
        self.transaction_hash = transaction_hash


class OutOfRangeError(KeeperError):
    """The requested timestamp predates the ledger's genesis block."""


class RetriesExhaustedError(KeeperError):
    """A cycle kept failing after every allowed retry."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Cycle failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
