"""Domain errors shared by the catalog, state store, auth guard and lifecycle manager.

Each error carries the HTTP status and machine-readable code the API layer
reports for it, so routers can let these propagate untouched.
"""

from __future__ import annotations

from typing import Any


class SeedlingError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ServiceNotFoundError(SeedlingError):
    status_code = 404
    code = "not_found"

    def __init__(self, key: str, message: str | None = None) -> None:
        super().__init__(message or f"Unknown service: {key}", details={"key": key})
        self.key = key


class UnauthenticatedError(SeedlingError):
    status_code = 401
    code = "unauthorized"


class SessionExpiredError(UnauthenticatedError):
    code = "session_expired"


class InvalidCredentialsError(SeedlingError):
    status_code = 401
    code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class PermissionDeniedError(SeedlingError):
    status_code = 403
    code = "forbidden"


class ConflictError(SeedlingError):
    status_code = 409
    code = "conflict"


class StaleAttemptError(ConflictError):
    """Raised when a result belongs to an install attempt that is no longer current."""

    code = "stale_attempt"


class ExecutionError(SeedlingError):
    status_code = 502
    code = "execution_error"


class InstallTimeoutError(SeedlingError):
    status_code = 504
    code = "timeout"
