"""Best-effort session resolution and credential acquisition.

These wrappers sit between the request path and the identity provider. They
never raise: a provider failure is logged and reported as "no session" or
"no credential". What happens next is policy, decided by the caller:

  - the route guard redirects to sign-in when no session was resolved
  - the forwarder proceeds without Authorization (fail-open) or answers 401
    (fail-closed) when no credential was obtained
"""

from __future__ import annotations

from typing import Optional

from starlette.requests import Request

from gateway.auth.identity import IdentityProvider, IdentityProviderError, Session
from gateway.utils.logger import get_logger

logger = get_logger(__name__)

# Sentinel so a resolved "no session" is cached as well as a resolved session.
_UNRESOLVED = object()


async def resolve_session(request: Request) -> Optional[Session]:
    """Return the session for ``request``, resolving it at most once.

    The result is cached on ``request.state.session`` so the guard and the
    handler share a single identity-provider round trip.
    """
    cached = getattr(request.state, "session", _UNRESOLVED)
    if cached is not _UNRESOLVED:
        return cached

    provider: IdentityProvider = request.app.state.identity_provider
    try:
        session = await provider.get_session(request)
    except IdentityProviderError as exc:
        logger.warning("session_unavailable", path=request.url.path, error=str(exc))
        session = None

    request.state.session = session
    return session


async def acquire_credential(
    provider: IdentityProvider,
    session: Optional[Session],
    template: str,
) -> Optional[str]:
    """Mint a bearer token for ``template`` on behalf of ``session``.

    Returns None (and logs ``credential_unavailable``) when there is no active
    session, the provider errors, or it issues an empty token. Never raises.
    """
    if session is None:
        logger.debug("credential_unavailable", template=template, reason="no_session")
        return None

    try:
        token = await provider.get_token(session, template)
    except IdentityProviderError as exc:
        logger.warning(
            "credential_unavailable",
            template=template,
            session_id=session.session_id,
            reason="provider_error",
            error=str(exc),
        )
        return None
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "credential_unavailable",
            template=template,
            session_id=session.session_id,
            reason="unexpected_error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None

    if not token:
        logger.warning(
            "credential_unavailable",
            template=template,
            session_id=session.session_id,
            reason="empty_token",
        )
        return None
    return token
