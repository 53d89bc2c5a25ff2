"""Integration tests for RouteGuardMiddleware inside the full application.

Protected paths without a session → 307 to sign-in with the return path.
Protected paths with a session → reach routing (404 for unknown pages).
Public paths, the mount, public fixed routes and static assets → never redirected.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.testclient import TestClient

from gateway.config import Config


class TestProtectedPaths:
    @pytest.mark.parametrize("path", ["/settings", "/project/42/alerts", "/jira/gen-code"])
    def test_no_session_redirects(self, build_app, upstream, path: str) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            response = client.get(path)

        assert response.status_code == 307
        location = urlsplit(response.headers["location"])
        assert location.path == "/sign-in"
        assert parse_qs(location.query) == {"redirect_url": [path]}
        assert response.headers["access-control-allow-origin"] == "*"
        assert upstream.requests == []

    def test_return_path_keeps_query(self, build_app) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            response = client.get("/project/42?tab=alerts&page=2")
        location = urlsplit(response.headers["location"])
        assert parse_qs(location.query) == {"redirect_url": ["/project/42?tab=alerts&page=2"]}

    def test_options_not_redirected(self, build_app, identity) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            response = client.options("/settings")
        # No page lives at /settings; routing answers, not the guard.
        assert response.status_code != 307
        assert identity.session_calls == 0

    def test_unknown_cookie_redirects(self, build_app, identity) -> None:
        identity.add_user("cookie-a", token="jwt-a")
        with TestClient(build_app(), follow_redirects=False) as client:
            client.cookies.set("__session", "forged")
            response = client.get("/settings")
        assert response.status_code == 307

    def test_session_passes_through(self, build_app, identity) -> None:
        identity.add_user("cookie-a", token="jwt-a")
        with TestClient(build_app(), follow_redirects=False) as client:
            client.cookies.set("__session", "cookie-a")
            response = client.get("/settings")

        # The gateway serves no pages of its own; routing answers 404.
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found"}

    def test_session_resolved_once_per_request(self, build_app, upstream, identity) -> None:
        identity.add_user("cookie-a", token="jwt-a")
        with TestClient(build_app(), follow_redirects=False) as client:
            client.cookies.set("__session", "cookie-a")
            response = client.get("/jira/gen-code")

        assert response.status_code == 200
        assert identity.session_calls == 1
        assert upstream.last.headers["authorization"] == "Bearer jwt-a"

    def test_custom_sign_in_url(self, build_app, gateway_config: Config) -> None:
        gateway_config.guard.sign_in_url = "https://accounts.example/login"
        gateway_config.guard.return_param = "next"
        with TestClient(build_app(gateway_config), follow_redirects=False) as client:
            response = client.get("/settings")
        location = urlsplit(response.headers["location"])
        assert location.netloc == "accounts.example"
        assert parse_qs(location.query) == {"next": ["/settings"]}


class TestPublicPaths:
    @pytest.mark.parametrize(
        "path",
        [
            "/",
            "/health",
            "/sign-in",
            "/sign-up/verify",
            "/favicon.ico",
            "/_next/static/chunks/app.js",
            "/images/logo.svg",
        ],
    )
    def test_never_redirected(self, build_app, path: str) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            response = client.get(path)
        assert response.status_code != 307

    def test_mount_is_public(self, build_app, upstream, identity) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            response = client.get("/api/backend/projects")
        assert response.status_code == 200
        assert identity.session_calls == 1
        assert len(upstream.requests) == 1

    def test_public_paths_skip_session_lookup(self, build_app, identity) -> None:
        with TestClient(build_app(), follow_redirects=False) as client:
            client.get("/health")
            client.get("/sign-in")
        assert identity.session_calls == 0

    def test_configured_public_pattern(self, build_app, gateway_config: Config) -> None:
        gateway_config.guard.public_paths = ["/status(/.*)?"]
        with TestClient(build_app(gateway_config), follow_redirects=False) as client:
            public = client.get("/status/deep/page")
            protected = client.get("/sign-in")
        assert public.status_code == 404
        assert protected.status_code == 307
