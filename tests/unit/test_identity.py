"""Unit tests for identity providers and best-effort token acquisition.

Covers:
  gateway/auth/identity.py — HttpIdentityProvider HTTP contract (verify +
                             token endpoints), NullIdentityProvider,
                             create_identity_provider() selection
  gateway/auth/tokens.py   — acquire_credential() never raises;
                             resolve_session() caches per request
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Optional

import httpx
import pytest
from starlette.requests import Request

from gateway.auth.identity import (
    HttpIdentityProvider,
    IdentityProvider,
    IdentityProviderError,
    NullIdentityProvider,
    Session,
    create_identity_provider,
)
from gateway.auth.tokens import acquire_credential, resolve_session
from gateway.config import AuthConfig

IDENTITY_BASE = "https://identity.test"
SECRET = "sk_test_secret"


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _request(cookie: Optional[str] = None, authorization: Optional[str] = None, app=None) -> Request:
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"__session={cookie}".encode()))
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "server": ("testserver", 80),
        "path": "/settings",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
    }
    if app is not None:
        scope["app"] = app
    return Request(scope)


class _IdentityService:
    """MockTransport handler standing in for the identity service."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.verify_status = 200
        self.verify_body: dict = {"id": "sess_1", "user_id": "user_1", "status": "active"}
        self.token_status = 200
        self.token_body: dict = {"jwt": "minted.jwt.value"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/sessions/verify":
            return httpx.Response(self.verify_status, json=self.verify_body)
        if request.url.path.startswith("/v1/sessions/") and "/tokens/" in request.url.path:
            return httpx.Response(self.token_status, json=self.token_body)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def service() -> _IdentityService:
    return _IdentityService()


# ─── HttpIdentityProvider.get_session() ───────────────────────────────────────


class TestHttpGetSession:
    @pytest.mark.asyncio
    async def test_no_token_no_call(self, service: _IdentityService) -> None:
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            assert await provider.get_session(_request()) is None
        assert service.requests == []

    @pytest.mark.asyncio
    async def test_cookie_verified(self, service: _IdentityService) -> None:
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            session = await provider.get_session(_request(cookie="browser-token"))

        assert session == Session(session_id="sess_1", user_id="user_1", token="browser-token")
        verify = service.requests[0]
        assert verify.method == "GET"
        assert str(verify.url) == "https://identity.test/v1/sessions/verify"
        assert verify.headers["x-session-token"] == "browser-token"
        assert verify.headers["authorization"] == f"Bearer {SECRET}"

    @pytest.mark.asyncio
    async def test_bearer_header_used_without_cookie(self, service: _IdentityService) -> None:
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            session = await provider.get_session(_request(authorization="Bearer hdr-token"))

        assert session is not None
        assert service.requests[0].headers["x-session-token"] == "hdr-token"

    @pytest.mark.asyncio
    async def test_rejected_session_is_none(self, service: _IdentityService) -> None:
        service.verify_status = 401
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            assert await provider.get_session(_request(cookie="expired")) is None

    @pytest.mark.asyncio
    async def test_inactive_session_is_none(self, service: _IdentityService) -> None:
        service.verify_body = {"id": "sess_1", "user_id": "user_1", "status": "revoked"}
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            assert await provider.get_session(_request(cookie="revoked")) is None

    @pytest.mark.asyncio
    async def test_service_error_raises(self, service: _IdentityService) -> None:
        service.verify_status = 502
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            with pytest.raises(IdentityProviderError):
                await provider.get_session(_request(cookie="t"))


# ─── HttpIdentityProvider.get_token() ─────────────────────────────────────────


class TestHttpGetToken:
    SESSION = Session(session_id="sess_1", user_id="user_1", token="t")

    @pytest.mark.asyncio
    async def test_mints_token_for_template(self, service: _IdentityService) -> None:
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            token = await provider.get_token(self.SESSION, "BACKEND")

        assert token == "minted.jwt.value"
        call = service.requests[0]
        assert call.method == "POST"
        assert str(call.url) == "https://identity.test/v1/sessions/sess_1/tokens/BACKEND"
        assert call.headers["authorization"] == f"Bearer {SECRET}"

    @pytest.mark.asyncio
    async def test_unknown_template_raises(self, service: _IdentityService) -> None:
        service.token_status = 404
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            with pytest.raises(IdentityProviderError):
                await provider.get_token(self.SESSION, "MISSING")

    @pytest.mark.asyncio
    async def test_empty_jwt_is_none(self, service: _IdentityService) -> None:
        service.token_body = {"jwt": ""}
        async with service.client() as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            assert await provider.get_token(self.SESSION, "BACKEND") is None

    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            provider = HttpIdentityProvider(client, IDENTITY_BASE, SECRET)
            with pytest.raises(IdentityProviderError):
                await provider.get_token(self.SESSION, "BACKEND")


# ─── NullIdentityProvider / factory ───────────────────────────────────────────


class TestNullProviderAndFactory:
    @pytest.mark.asyncio
    async def test_null_provider_has_no_sessions_or_tokens(self) -> None:
        provider = NullIdentityProvider()
        session = Session(session_id="s", user_id="u", token="t")
        assert await provider.get_session(_request(cookie="anything")) is None
        assert await provider.get_token(session, "BACKEND") is None

    def test_factory_defaults_to_null(self) -> None:
        provider = create_identity_provider(AuthConfig(), httpx.AsyncClient())
        assert isinstance(provider, NullIdentityProvider)
        assert isinstance(provider, IdentityProvider)

    def test_factory_selects_http(self) -> None:
        auth = AuthConfig(provider="http", identity_base_url=IDENTITY_BASE, secret_key=SECRET)
        provider = create_identity_provider(auth, httpx.AsyncClient())
        assert isinstance(provider, HttpIdentityProvider)


# ─── acquire_credential() ─────────────────────────────────────────────────────


class _StubProvider:
    def __init__(self, result=None, error: Optional[BaseException] = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[str] = []

    async def get_session(self, request):
        return None

    async def get_token(self, session, template):
        self.calls.append(template)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self) -> None:
        return None


class TestAcquireCredential:
    SESSION = Session(session_id="sess_1", user_id="user_1", token="t")

    @pytest.mark.asyncio
    async def test_returns_token(self) -> None:
        provider = _StubProvider(result="jwt")
        assert await acquire_credential(provider, self.SESSION, "BACKEND") == "jwt"
        assert provider.calls == ["BACKEND"]

    @pytest.mark.asyncio
    async def test_no_session_skips_provider(self) -> None:
        provider = _StubProvider(result="jwt")
        assert await acquire_credential(provider, None, "BACKEND") is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_error_swallowed(self) -> None:
        provider = _StubProvider(error=IdentityProviderError("down"))
        assert await acquire_credential(provider, self.SESSION, "BACKEND") is None

    @pytest.mark.asyncio
    async def test_unexpected_error_swallowed(self) -> None:
        provider = _StubProvider(error=KeyError("jwt"))
        assert await acquire_credential(provider, self.SESSION, "BACKEND") is None

    @pytest.mark.asyncio
    async def test_empty_token_is_none(self) -> None:
        provider = _StubProvider(result="")
        assert await acquire_credential(provider, self.SESSION, "BACKEND") is None


# ─── resolve_session() ────────────────────────────────────────────────────────


class _CountingProvider(_StubProvider):
    def __init__(self, session=None, error=None) -> None:
        super().__init__()
        self.session = session
        self.session_error = error
        self.session_calls = 0

    async def get_session(self, request):
        self.session_calls += 1
        if self.session_error is not None:
            raise self.session_error
        return self.session


def _app_with(provider) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(identity_provider=provider))


class TestResolveSession:
    @pytest.mark.asyncio
    async def test_resolved_once_per_request(self) -> None:
        session = Session(session_id="s", user_id="u", token="t")
        provider = _CountingProvider(session=session)
        request = _request(cookie="t", app=_app_with(provider))

        assert await resolve_session(request) is session
        assert await resolve_session(request) is session
        assert provider.session_calls == 1

    @pytest.mark.asyncio
    async def test_missing_session_cached_too(self) -> None:
        provider = _CountingProvider(session=None)
        request = _request(app=_app_with(provider))

        assert await resolve_session(request) is None
        assert await resolve_session(request) is None
        assert provider.session_calls == 1

    @pytest.mark.asyncio
    async def test_provider_error_means_no_session(self) -> None:
        provider = _CountingProvider(error=IdentityProviderError("down"))
        request = _request(cookie="t", app=_app_with(provider))
        assert await resolve_session(request) is None
