"""Per-request log context: request id, path and, on admin calls, the acting admin."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-Id"
ADMIN_USER_HEADER = "X-Admin-User-Id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        context: dict[str, str | int] = {"request_id": request_id, "path": request.url.path}
        admin_user = request.headers.get(ADMIN_USER_HEADER, "")
        if admin_user.isdigit():
            # Audit trail for reconciliation and manual awards.
            context["admin_user_id"] = int(admin_user)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
