"""Per-request correlation IDs.

RequestContextMiddleware is the outermost middleware: it assigns a ULID to
every request, binds it into the structlog context (every log entry emitted
while the request is in flight carries ``request_id``) and returns it to the
browser as ``X-Request-ID``.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gateway.utils.logger import clear_request_id, set_request_id
from gateway.utils.ulid import generate_ulid

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_ulid()
        request.state.request_id = request_id
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
