"""
Exception hierarchy for the SignalTriage engine.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for engine errors."""
    pass


class MalformedRequestError(TriageError):
    """Raised for client errors: unknown resource type, action, or payload shape."""

    def __init__(self, message: str, details: list | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class RecordNotFoundError(TriageError):
    """Raised when a datum or alert id does not exist in the store."""
    pass


class StorageWriteError(TriageError):
    """Raised when a primary write (datum, alert, lock state) fails."""
    pass


class AuditWriteError(TriageError):
    """Raised when an audit record could not be appended."""
    pass


class EscalationPersistenceError(TriageError):
    """Raised when an escalation alert could not be persisted after retries."""
    pass


class InvalidTransitionError(TriageError):
    """Raised when a requested state change is not permitted."""
    pass
