"""Permissive CORS policy for the gateway.

Every response leaving the gateway carries ``Access-Control-Allow-Origin: *``
(applied by CorsHeaderMiddleware, so guard redirects, 404s and error envelopes
get it too). Preflight ``OPTIONS`` requests on proxied paths are answered here
with 204; the backend is never contacted for them.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gateway.constants import CORS_ALLOW_HEADERS, CORS_ALLOW_METHODS, CORS_ALLOW_ORIGIN


def apply_cors_headers(response: Response) -> Response:
    """Set the allow-origin header on ``response`` and return it."""
    response.headers["Access-Control-Allow-Origin"] = CORS_ALLOW_ORIGIN
    return response


def build_preflight_response() -> Response:
    """Answer a browser preflight: 204, no body, the three CORS headers."""
    response = Response(status_code=204)
    response.headers["Access-Control-Allow-Origin"] = CORS_ALLOW_ORIGIN
    response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
    return response


class CorsHeaderMiddleware(BaseHTTPMiddleware):
    """Attach ``Access-Control-Allow-Origin: *`` to every response.

    Registered outside the route guard in create_app() so that guard redirects
    and exception-handler envelopes are covered as well as proxied responses.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        response = await call_next(request)
        return apply_cors_headers(response)
