"""Identity provider interface and implementations.

The identity provider is an external service. The gateway needs exactly two
capabilities from it:

  get_session(request)        — which signed-in session (if any) does this
                                browser request belong to?
  get_token(session, template) — mint a short-lived bearer token for the
                                backend audience named by ``template``.

Implementations:

  NullIdentityProvider — no sessions, no tokens. Local development default
                         (auth.provider: none).

  HttpIdentityProvider — talks to the identity service over HTTP
                         (auth.provider: http):

      GET  {base}/v1/sessions/verify
           X-Session-Token: <browser session token>
           → 200 {"id": "...", "user_id": "...", "status": "active"}

      POST {base}/v1/sessions/{session_id}/tokens/{template}
           → 200 {"jwt": "<token>"}

      Both calls authenticate with ``Authorization: Bearer <secret_key>``.

Provider methods raise IdentityProviderError on any failure. Callers decide
what a failure means; see gateway/auth/tokens.py for the best-effort wrappers
the request path uses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx
from starlette.requests import Request

from gateway.config import AuthConfig
from gateway.constants import IDENTITY_TIMEOUT_S
from gateway.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Types ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Session:
    """An active identity-provider session.

    token is the raw session token the browser presented; it is never
    forwarded to the backend.
    """

    session_id: str
    user_id: str
    token: str


class IdentityProviderError(Exception):
    """The identity provider could not answer (transport error or bad reply)."""


@runtime_checkable
class IdentityProvider(Protocol):
    """Pluggable identity provider."""

    async def get_session(self, request: Request) -> Optional[Session]:
        """Return the active session for ``request``, or None when signed out."""
        ...

    async def get_token(self, session: Session, template: str) -> Optional[str]:
        """Mint a bearer token for ``template``; None when none is issued."""
        ...

    async def close(self) -> None:
        ...


# ─── Null provider ────────────────────────────────────────────────────────────


class NullIdentityProvider:
    """Provider that knows no sessions and issues no tokens."""

    async def get_session(self, request: Request) -> Optional[Session]:
        return None

    async def get_token(self, session: Session, template: str) -> Optional[str]:
        return None

    async def close(self) -> None:
        return None


# ─── HTTP provider ────────────────────────────────────────────────────────────


class HttpIdentityProvider:
    """Identity provider reached over HTTP through the shared httpx client.

    The client is owned by the application lifespan; close() does not close it.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        secret_key: Optional[str] = None,
        session_cookie: str = "__session",
        timeout_s: float = IDENTITY_TIMEOUT_S,
    ) -> None:
        self._client = http_client
        self._base_url = base_url.rstrip("/")
        self._secret_key = secret_key
        self._session_cookie = session_cookie
        self._timeout = httpx.Timeout(timeout_s)

    def extract_session_token(self, request: Request) -> Optional[str]:
        """Session token from the session cookie, else from ``Authorization: Bearer``."""
        token = request.cookies.get(self._session_cookie)
        if token:
            return token
        authorization = request.headers.get("authorization", "")
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return None

    def _service_headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self._secret_key:
            headers["authorization"] = f"Bearer {self._secret_key}"
        return headers

    async def _call(self, method: str, url: str, headers: dict[str, str]) -> httpx.Response:
        try:
            return await self._client.request(
                method, url, headers=headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"{type(exc).__name__}: {exc}") from exc

    async def get_session(self, request: Request) -> Optional[Session]:
        token = self.extract_session_token(request)
        if not token:
            return None

        headers = self._service_headers()
        headers["x-session-token"] = token
        response = await self._call("GET", f"{self._base_url}/v1/sessions/verify", headers)

        if response.status_code in (401, 403, 404):
            return None
        if response.status_code != 200:
            raise IdentityProviderError(
                f"session verification returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise IdentityProviderError("session verification returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise IdentityProviderError("session verification returned a non-object body")

        if data.get("status", "active") != "active" or not data.get("id"):
            return None
        return Session(
            session_id=str(data["id"]),
            user_id=str(data.get("user_id", "")),
            token=token,
        )

    async def get_token(self, session: Session, template: str) -> Optional[str]:
        url = f"{self._base_url}/v1/sessions/{session.session_id}/tokens/{template}"
        response = await self._call("POST", url, self._service_headers())

        if response.status_code != 200:
            raise IdentityProviderError(
                f"token template '{template}' returned HTTP {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise IdentityProviderError("token endpoint returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise IdentityProviderError("token endpoint returned a non-object body")

        return data.get("jwt") or None

    async def close(self) -> None:
        return None


# ─── Factory ──────────────────────────────────────────────────────────────────


def create_identity_provider(
    auth: AuthConfig,
    http_client: httpx.AsyncClient,
) -> IdentityProvider:
    """Select the identity provider named by ``auth.provider``.

    Args:
        auth:        AuthConfig from the loaded Config.
        http_client: Shared client (reused for identity calls).
    """
    if auth.provider == "http" and auth.identity_base_url:
        logger.info(
            "identity_provider_selected",
            provider="HttpIdentityProvider",
            base_url=auth.identity_base_url,
            token_template=auth.token_template,
        )
        return HttpIdentityProvider(
            http_client,
            auth.identity_base_url,
            secret_key=auth.secret_key,
            session_cookie=auth.session_cookie,
        )

    logger.info("identity_provider_selected", provider="NullIdentityProvider")
    return NullIdentityProvider()
