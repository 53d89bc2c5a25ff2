"""ULID generation for per-request correlation IDs.

Each inbound request gets a 26-character ULID (Crockford Base32, millisecond
timestamp + random component). It is bound into the structlog context and
echoed to the client as ``X-Request-ID`` so browser-side errors can be matched
to gateway log lines.

Uses the ``python-ulid`` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())
