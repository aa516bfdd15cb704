from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. ``detail`` carries the target, table or collection involved
    plus the underlying reason so operators can act without reading logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Operation conflicts with one already in flight (409)."""
    status_code = 409
    error_code = "conflict"


class ConnectivityError(ServiceError):
    """Target engine is unreachable or rejected the credentials (502)."""
    status_code = 502
    error_code = "connectivity_error"


class IncompleteTargetError(ServiceError):
    """Target is reachable but still lacks required collections (409)."""
    status_code = 409
    error_code = "incomplete_target"


class WriteError(ServiceError):
    """Local state could not be persisted (500)."""
    status_code = 500
    error_code = "write_error"


class BackupToolError(ServiceError):
    """The external dump utility failed (500)."""
    status_code = 500
    error_code = "backup_tool_error"


class RestoreToolError(ServiceError):
    """The external restore utility failed (500)."""
    status_code = 500
    error_code = "restore_tool_error"


class NotInstalledError(ServiceError):
    """The system has not completed installation (503)."""
    status_code = 503
    error_code = "not_installed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ConnectivityError",
    "IncompleteTargetError",
    "WriteError",
    "BackupToolError",
    "RestoreToolError",
    "NotInstalledError",
    "ServerError",
]
