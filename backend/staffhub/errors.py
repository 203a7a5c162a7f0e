"""Error taxonomy for the access-control core.

Service internals raise these; public entry points convert them into
``ActionResult`` values (see ``staffhub.services.results``) so callers only
ever inspect a result, never catch.
"""
from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INFRASTRUCTURE = "infrastructure"


class AccessError(Exception):
    """Base class for every error the core reports to callers."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticatedError(AccessError):
    kind = ErrorKind.NOT_AUTHENTICATED
    default_message = "Not authenticated"


class PermissionDeniedError(AccessError):
    kind = ErrorKind.PERMISSION_DENIED
    default_message = "You don't have permission to perform this action"


class ValidationFailedError(AccessError):
    kind = ErrorKind.VALIDATION
    default_message = "Invalid input"


class NotFoundError(AccessError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class InfrastructureError(AccessError):
    kind = ErrorKind.INFRASTRUCTURE
    default_message = "Operation failed"
