"""Ledger domain specific exceptions."""


class LedgerServiceError(Exception):
    """Base class for ledger domain errors."""


class UserNotFoundError(LedgerServiceError):
    pass


class TransactionNotFoundError(LedgerServiceError):
    """Raised when no Pending transaction matches the requested id."""


class InvalidRequestError(LedgerServiceError):
    pass


class InvalidTransactionTypeError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class UnauthorizedError(LedgerServiceError):
    pass


class ConflictError(LedgerServiceError):
    """Raised when a write loses an optimistic-concurrency race or duplicates a key."""


class StorageFailureError(Exception):
    """Raised when the persistence layer cannot serve a request."""
