"""
errors.py — Exception taxonomy for ledger synchronisation and detection.

    AuthError        — token exchange / refresh failed; tenant must reconnect
    LedgerError      — transport failure or non-2xx response from the ledger
    ValidationError  — a ledger record could not be mapped to a canonical shape
"""


class RevLeakError(Exception):
    """Base class for every error raised by the revleak package."""


class AuthError(RevLeakError):
    """Credential exchange or refresh failed for a tenant."""

    def __init__(self, message: str, company_id: str | None = None):
        super().__init__(message)
        self.company_id = company_id


class LedgerError(RevLeakError):
    """The ledger query endpoint could not be reached or rejected the call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(RevLeakError):
    """A wire record is missing required fields or carries unparseable values."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id
