"""Root test configuration for the gateway.

Shared fixtures:
  upstream        — MockUpstream: an in-process backend built on
                    httpx.MockTransport that records every request it receives
  identity        — FakeIdentityProvider: sessions and tokens keyed by the
                    ``__session`` cookie, no network
  gateway_config  — Config.defaults() pointed at http://backend.test
  build_app       — factory returning a gateway app whose lifespan builds its
                    shared client from ``upstream`` and uses ``identity``

Nothing here touches the network or the filesystem.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import pytest
from starlette.requests import Request

from gateway.auth.identity import IdentityProviderError, Session
from gateway.config import Config
from gateway.main import create_app

BACKEND_BASE = "http://backend.test"

Responder = Callable[[httpx.Request], Union[httpx.Response, Awaitable[httpx.Response]]]


# ─── Mock backend ─────────────────────────────────────────────────────────────


class MockUpstream:
    """In-process mock backend using httpx.MockTransport.

    Records every request (and its fully read body) and answers with the
    configured responder. The default responder returns 200 ``{"ok": true}``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []
        self.responder: Responder = self._default_responder

    @staticmethod
    def _default_responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        self.requests.append(request)
        self.bodies.append(body)
        result = self.responder(request)
        if not isinstance(result, httpx.Response):
            result = await result
        return result

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


# ─── Fake identity provider ───────────────────────────────────────────────────


class FakeIdentityProvider:
    """Identity provider with in-memory sessions.

    sessions: session token (``__session`` cookie value) → Session
    tokens:   session_id → minted bearer token
    fail:     when True, get_token() raises IdentityProviderError
    """

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.tokens: dict[str, str] = {}
        self.fail = False
        self.session_calls = 0
        self.token_calls: list[tuple[str, str]] = []
        self.closed = False

    def add_user(self, cookie: str, token: Optional[str]) -> Session:
        session = Session(session_id=f"sess_{cookie}", user_id=f"user_{cookie}", token=cookie)
        self.sessions[cookie] = session
        if token is not None:
            self.tokens[session.session_id] = token
        return session

    async def get_session(self, request: Request) -> Optional[Session]:
        self.session_calls += 1
        cookie = request.cookies.get("__session")
        return self.sessions.get(cookie) if cookie else None

    async def get_token(self, session: Session, template: str) -> Optional[str]:
        self.token_calls.append((session.session_id, template))
        if self.fail:
            raise IdentityProviderError("identity service unavailable")
        return self.tokens.get(session.session_id)

    async def close(self) -> None:
        self.closed = True


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def gateway_config() -> Config:
    config = Config.defaults()
    config.backend.base_url = BACKEND_BASE
    return config


@pytest.fixture
def build_app(
    monkeypatch: pytest.MonkeyPatch,
    upstream: MockUpstream,
    identity: FakeIdentityProvider,
    gateway_config: Config,
) -> Callable[..., Any]:
    """Return a factory for gateway apps wired to ``upstream`` and ``identity``.

    The lifespan calls create_http_client / create_identity_provider through
    gateway.main, so patching those names is enough to swap both out.
    """

    def _build(config: Optional[Config] = None) -> Any:
        monkeypatch.setattr(
            "gateway.main.create_http_client", lambda backend: upstream.client()
        )
        monkeypatch.setattr(
            "gateway.main.create_identity_provider", lambda auth, client: identity
        )
        return create_app(config or gateway_config)

    return _build
