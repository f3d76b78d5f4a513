"""Custom exceptions for SplitLedger."""


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(SplitLedgerError):
    """Raised when a bill, member or payment is malformed.

    Rejected at the ledger boundary; the input never reaches storage.
    """

    pass


class NotFoundError(SplitLedgerError):
    """Raised when a group, member or bill id is unknown."""

    def __init__(self, kind: str, identifier: str, message: str | None = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"{kind.capitalize()} {identifier} not found")


class IntegrityError(SplitLedgerError):
    """Raised when the zero-sum invariant of a group is violated.

    The affected group's cached results must not be served.
    """

    def __init__(self, group_id: str | None, message: str):
        self.group_id = group_id
        super().__init__(message)


class StorageError(SplitLedgerError):
    """Raised when the repository rejects or fails a write."""

    pass


class APIError(SplitLedgerError):
    """Base class for API-related errors."""

    pass


class WebhookError(APIError):
    """Raised when a change notification webhook request fails."""

    pass
