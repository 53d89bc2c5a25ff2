"""Error response builders for the gateway's own failure modes.

Every error the gateway itself produces uses the same envelope:

    {"error": "<description>"}

Upstream 4xx/5xx responses never go through these builders; they are passed
through verbatim because their semantics belong to the backend.

  build_upstream_failure_response():
      HTTP 500 — the backend could not be reached (connection refused, DNS
      failure, timeout, protocol error). No retry is attempted.

  build_credential_required_response():
      HTTP 401 — credential policy is fail-closed and no bearer token could be
      minted for the backend. The backend is not contacted.

  build_missing_query_response():
      HTTP 400 — a fixed route was called without one of its required query
      parameters.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from gateway.proxy.cors import apply_cors_headers


def error_envelope(description: str) -> dict[str, str]:
    return {"error": description}


def build_upstream_failure_response(description: str) -> JSONResponse:
    """Build the HTTP 500 response for a transport-level failure.

    Args:
        description: Human-readable cause, e.g. ``"ConnectError: connection
                     refused"``. Must not contain credentials.
    """
    return apply_cors_headers(
        JSONResponse(status_code=500, content=error_envelope(description))
    )


def build_credential_required_response() -> JSONResponse:
    """Build the HTTP 401 response for fail-closed credential policy."""
    return apply_cors_headers(
        JSONResponse(
            status_code=401,
            content=error_envelope("Unable to obtain a backend credential"),
        )
    )


def build_missing_query_response(name: str, message: Optional[str] = None) -> JSONResponse:
    """Build the HTTP 400 response for a missing required query parameter.

    ``message`` replaces the generic text when the route configures its own.
    """
    return apply_cors_headers(
        JSONResponse(
            status_code=400,
            content=error_envelope(message or f"Missing required query parameter: {name}"),
        )
    )
