"""Exception hierarchy for the lending ledger.

All errors derive from ValueError so callers written against plain
ValueError keep working.
"""


class LendingError(ValueError):
    """Base exception for all ledger errors."""


class RecordNotFoundError(LendingError):
    """Raised when a required loan, lead, loan type or receipt does not exist."""


class AccountNotFoundError(RecordNotFoundError):
    """Raised when a route has no account of the required type."""


class InsufficientFundsError(LendingError):
    """Raised when applying a transaction would leave an account below zero."""


class InvalidTransactionError(LendingError):
    """Raised when a transaction has an invalid type, amount or account combination."""


class FalcoOvercompensationError(LendingError):
    """Raised when a compensation exceeds the remaining shortfall."""
