"""Structured results returned by every public service entry point.

Service internals raise ``staffhub.errors.AccessError`` subclasses; the
``guarded`` decorator turns those, and any database failure, into an
``ActionResult`` so callers check ``success`` instead of catching.
"""
from __future__ import annotations

import dataclasses
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from staffhub.errors import AccessError, ErrorKind

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ActionResult:
    success: bool
    data: dict[str, Any] = dataclasses.field(default_factory=dict)
    error: str | None = None
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> ActionResult:
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, message: str, kind: ErrorKind) -> ActionResult:
        return cls(success=False, error=message, kind=kind)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.error}


def guarded(
    failure_message: str,
) -> Callable[[Callable[..., Awaitable[dict | None]]], Callable[..., Awaitable[ActionResult]]]:
    """Wrap an async service function so it always returns an ``ActionResult``.

    Usage::

        @guarded("Failed to update permissions")
        async def bulk_update(db, actor, ...) -> dict:
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> ActionResult:
            try:
                data = await func(*args, **kwargs)
            except AccessError as exc:
                return ActionResult.fail(exc.message, exc.kind)
            except SQLAlchemyError:
                logger.exception("%s (%s)", failure_message, func.__qualname__)
                return ActionResult.fail(failure_message, ErrorKind.INFRASTRUCTURE)
            return ActionResult.ok(data)

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# HTTP translation
# ---------------------------------------------------------------------------

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_AUTHENTICATED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INFRASTRUCTURE: 500,
}


def to_response(result: ActionResult, success_status: int = 200):
    """Turn an ``ActionResult`` into a route return value."""
    if result.success and success_status == 200:
        return result.to_dict()
    if result.success:
        return JSONResponse(
            status_code=success_status, content=jsonable_encoder(result.to_dict())
        )
    status_code = _STATUS_BY_KIND.get(result.kind, 500)
    return JSONResponse(status_code=status_code, content=result.to_dict())
