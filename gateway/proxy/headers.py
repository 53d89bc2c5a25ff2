"""HTTP header policy for the backend gateway.

Two static tables decide which headers cross the gateway:

  - STRIP_ON_REQUEST: hop-by-hop headers (RFC 7230 §6.1), forwarding headers
    and browser fingerprinting headers. Never sent to the backend.

  - STRIP_ON_RESPONSE: encoding/length/framing headers and content security
    policies from the backend. Never returned to the browser. The body is
    re-framed by Starlette after buffering, so the backend's framing headers
    would be wrong, and the backend's CSP must not govern the dashboard origin.

build_upstream_headers() applies the request table, forces
``accept-encoding: identity`` so the backend never compresses a body the
gateway would have to decode, and attaches the bearer credential.

build_client_response_headers() applies the response table.

Both functions build a fresh list on every call; nothing here is shared between
concurrent requests.
"""

from __future__ import annotations

from typing import Iterable, Optional

# ─── Tables ───────────────────────────────────────────────────────────────────

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

STRIP_ON_REQUEST: frozenset[str] = HOP_BY_HOP_HEADERS | frozenset(
    {
        "host",  # derived from the backend URL
        "content-length",  # httpx frames the streamed body itself
        "accept-encoding",  # replaced with identity below
        "upgrade-insecure-requests",
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-real-ip",
        "sec-fetch-mode",
        "sec-fetch-site",
        "sec-fetch-dest",
        "sec-fetch-user",
        "sec-ch-ua",
        "sec-ch-ua-mobile",
        "sec-ch-ua-platform",
    }
)

STRIP_ON_RESPONSE: frozenset[str] = frozenset(
    {
        "content-encoding",
        "content-length",
        "transfer-encoding",
        "connection",
        "keep-alive",
        "content-security-policy",
        "content-security-policy-report-only",
        "x-content-security-policy",
        "x-webkit-csp",
    }
)

IDENTITY_ENCODING: str = "identity"


# ─── Request direction ────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
    credential: Optional[str] = None,
) -> list[tuple[str, str]]:
    """Build the header list to send to the backend.

    Rules applied (in order):
      1. Drop every header named in STRIP_ON_REQUEST (case-insensitive).
      2. When a credential was obtained, drop the client's ``authorization``
         header(s); the minted token replaces them.
      3. Forward everything else unchanged, repeated headers included.
      4. Append ``accept-encoding: identity``.
      5. Append ``authorization: Bearer <credential>`` when a credential exists.

    Args:
        request_headers: (name, value) pairs, typically
                         ``request.headers.items()``.
        credential:      Bearer token minted for the backend, or None.

    Returns:
        A new list of (name, value) pairs.
    """
    headers: list[tuple[str, str]] = []

    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in STRIP_ON_REQUEST:
            continue
        if credential and lower_name == "authorization":
            continue
        headers.append((name, value))

    headers.append(("accept-encoding", IDENTITY_ENCODING))
    if credential:
        headers.append(("authorization", f"Bearer {credential}"))

    return headers


# ─── Response direction ───────────────────────────────────────────────────────


def build_client_response_headers(
    upstream_headers: Iterable[tuple[str, str]],
) -> list[tuple[str, str]]:
    """Build the header list to return to the browser.

    Drops every header named in STRIP_ON_RESPONSE and forwards the rest,
    repeated headers (``set-cookie``) included.

    Args:
        upstream_headers: (name, value) pairs, typically
                          ``httpx.Response.headers.multi_items()``.
    """
    return [
        (name, value)
        for name, value in upstream_headers
        if name.lower() not in STRIP_ON_RESPONSE
    ]


def has_header(headers: Iterable[tuple[str, str]], name: str) -> bool:
    """Case-insensitive membership test over a header list."""
    lower = name.lower()
    return any(key.lower() == lower for key, _ in headers)
