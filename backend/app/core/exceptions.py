"""Audit log exceptions."""


class AuditError(Exception):
    """Base exception for audit log errors."""

    pass


class AppendFailed(AuditError):
    """An audit event could not be committed to its chain.

    Nothing was written. ``retryable`` is set for transient storage
    conditions (lock contention, timeouts, dropped connections).
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ImmutableRecordViolation(AuditError):
    """An UPDATE or DELETE reached an append-only table."""

    def __init__(self, table: str, operation: str, message: str | None = None):
        super().__init__(message or f"{table} is append-only: {operation} rejected")
        self.table = table
        self.operation = operation


class AuthorizationDenied(AuditError):
    """Caller lacks the capability required for audit access."""

    pass


class ArchiveRefused(AuditError):
    """Archival was refused because the chain does not verify."""

    pass
