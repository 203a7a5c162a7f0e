"""Middleware that logs read-access events for sensitive endpoints.

Intercepts successful GET requests under configured route prefixes and
emits a ``READ_ACCESS`` audit event to the file sink without awaiting it.

The actor is read from ``request.state._audit_user``, which is set by
``get_current_user()`` in ``middleware/auth.py``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from staffhub.services.audit_service import AuditEvent, AuditEventCategory

logger = logging.getLogger(__name__)


class AuditReadAccessMiddleware(BaseHTTPMiddleware):
    """Log read-access events for sensitive data views."""

    def __init__(
        self,
        app,
        emit: Callable[[AuditEvent], None],
        prefixes: list[str],
    ) -> None:
        super().__init__(app)
        self.emit = emit
        self.prefixes = prefixes

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.method != "GET":
            return await call_next(request)

        path = request.url.path
        if not any(path.startswith(p) for p in self.prefixes):
            return await call_next(request)

        response = await call_next(request)

        if 200 <= response.status_code < 300:
            actor = getattr(request.state, "_audit_user", None)
            self.emit(AuditEvent(
                id=uuid4(),
                timestamp=datetime.now(timezone.utc),
                category=AuditEventCategory.READ_ACCESS,
                user_id=str(actor.id) if actor else None,
                user_email=actor.email if actor else None,
                action_type=f"read.{path.strip('/').replace('/', '.')}",
                resource_type="endpoint",
                resource_id=path,
                old_value=None,
                new_value={
                    "query_params": dict(request.query_params),
                    "status_code": response.status_code,
                },
                ip_address=request.client.host if request.client else None,
            ))

        return response
