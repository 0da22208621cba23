"""Error taxonomy for configuration transactions, analytics and monitoring."""

from __future__ import annotations

NETWORK_HINT = "check network connectivity, try a proxy, or retry the operation manually"


class ManagerError(Exception):
    """Base class for every failure surfaced to the operator."""

    kind = "error"
    exit_code = 1

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        return self.message


class InvalidInput(ManagerError):
    kind = "invalid_input"
    exit_code = 2


class Conflict(ManagerError):
    kind = "conflict"
    exit_code = 3


class NotFound(ManagerError):
    kind = "not_found"
    exit_code = 4


class ValidationFailed(ManagerError):
    """The mutated document was rejected and the previous one was put back."""

    kind = "validation_failed"
    exit_code = 5


class ReloadFailed(ManagerError):
    """The new document is on disk but the running server did not pick it up."""

    kind = "reload_failed"
    exit_code = 6


class IOFailure(ManagerError):
    kind = "io_failure"
    exit_code = 7


class LogUnavailable(ManagerError):
    kind = "log_unavailable"
    exit_code = 8


class Busy(ManagerError):
    kind = "busy"
    exit_code = 9


class PermissionDenied(ManagerError):
    kind = "permission_denied"
    exit_code = 10


class CollectorError(ManagerError):
    kind = "collector_error"
    exit_code = 11
