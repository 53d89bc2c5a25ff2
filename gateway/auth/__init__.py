"""Gateway identity package.

Public API:
  - IdentityProvider          — protocol: get_session() / get_token() / close()
  - NullIdentityProvider      — no sessions, no tokens (auth.provider: none)
  - HttpIdentityProvider      — identity service over HTTP (auth.provider: http)
  - create_identity_provider() — select a provider from AuthConfig
  - resolve_session()         — best-effort session lookup, cached per request
  - acquire_credential()      — best-effort token minting; None on any failure
  - RouteGuardMiddleware      — 307 to sign-in for protected paths without a session
"""

from __future__ import annotations

from gateway.auth.guard import RouteGuardMiddleware
from gateway.auth.identity import (
    HttpIdentityProvider,
    IdentityProvider,
    IdentityProviderError,
    NullIdentityProvider,
    Session,
    create_identity_provider,
)
from gateway.auth.tokens import acquire_credential, resolve_session

__all__ = [
    "HttpIdentityProvider",
    "IdentityProvider",
    "IdentityProviderError",
    "NullIdentityProvider",
    "Session",
    "create_identity_provider",
    "acquire_credential",
    "resolve_session",
    "RouteGuardMiddleware",
]
