"""Exception hierarchy shared by the drift, alert and audit components."""


class DriftGuardError(Exception):
    """Base class for all DriftGuard errors."""


class BaselineNotFoundError(DriftGuardError):
    """No baseline exists for the requested environment or id."""


class AlertNotFoundError(DriftGuardError):
    """Alert id is unknown to the alert manager."""


class ResponseActionNotFoundError(DriftGuardError):
    """Response action id is unknown for the given alert."""


class InvalidStatusTransitionError(DriftGuardError):
    """An alert in a terminal state cannot change status."""


class AuditWriteError(DriftGuardError):
    """A ledger entry could not be written to durable storage."""


class UnsupportedExportFormatError(DriftGuardError, ValueError):
    """Requested export format is not supported."""
