"""Response normalization: backend response → browser response.

The backend's body is always fully buffered before it is returned. Encoding,
length and framing headers are dropped (STRIP_ON_RESPONSE) and Starlette
recomputes ``content-length`` from the buffered bytes, so the header set the
browser sees always matches the body it receives.

TODO: stream large bodies through once content-length can be omitted instead
of recomputed after buffering.
"""

from __future__ import annotations

from typing import Iterable

from starlette.responses import RedirectResponse, Response

from gateway.constants import DEFAULT_CONTENT_TYPE
from gateway.proxy.cors import apply_cors_headers
from gateway.proxy.headers import build_client_response_headers, has_header


def normalize_response(
    status_code: int,
    upstream_headers: Iterable[tuple[str, str]],
    body: bytes,
) -> Response:
    """Build the browser-facing response from a buffered backend response.

    Rules:
      - status code passed through verbatim (3xx, 4xx and 5xx included)
      - STRIP_ON_RESPONSE headers removed; all others kept, repeats included
      - status != 204 and no ``content-type`` → ``application/json; charset=utf-8``
      - status 204 → empty body regardless of what the backend sent
      - ``Access-Control-Allow-Origin: *`` added

    Args:
        status_code:      Backend status.
        upstream_headers: (name, value) pairs from the backend response.
        body:             Fully buffered backend body.
    """
    headers = build_client_response_headers(upstream_headers)

    if status_code == 204:
        content = b""
    else:
        content = body
        if not has_header(headers, "content-type"):
            headers.append(("content-type", DEFAULT_CONTENT_TYPE))

    response = Response(content=content, status_code=status_code)
    for name, value in headers:
        response.headers.append(name, value)
    return apply_cors_headers(response)


def build_redirect_response(location: str) -> Response:
    """Re-issue a backend redirect to the browser (manual redirect mode)."""
    return apply_cors_headers(RedirectResponse(url=location, status_code=307))
