"""HTTP surface of the gateway: the generic mount and the fixed routes.

Routes registered by build_proxy_router(config):

  GET|POST|PUT|PATCH|DELETE  {mount}  and  {mount}/{path:path}
      → <backend>/<path>[?query], credential injected, redirects followed
  OPTIONS                    {mount}  and  {mount}/{path:path}
      → 204 preflight; backend never contacted, no credential minted
  <route.methods>            <route.path>   (one per FixedRoute)
      → <backend><route.target>[?query], with the route's own auth flag,
        redirect mode and required query parameters
  OPTIONS                    <route.path>
      → 204 preflight

Credential policy (auth.credential_policy):
  fail-open   — no credential → forward without Authorization
  fail-closed — no credential → 401 {"error": ...}; backend not contacted

Shared state read from app.state (populated by the lifespan in gateway/main.py):
  config, forwarder, identity_provider
"""

from __future__ import annotations

from typing import Awaitable, Callable

import httpx
from fastapi import APIRouter
from starlette.requests import Request
from starlette.responses import Response

from gateway.auth.tokens import acquire_credential, resolve_session
from gateway.config import BackendConfig, Config, FixedRoute
from gateway.constants import (
    FORWARDED_METHODS,
    POOL_KEEPALIVE_EXPIRY_S,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
)
from gateway.models.errors import (
    build_credential_required_response,
    build_missing_query_response,
)
from gateway.proxy.cors import build_preflight_response
from gateway.proxy.forwarder import Forwarder, RedirectMode, raw_subpath
from gateway.utils.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Request], Awaitable[Response]]


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(backend: BackendConfig) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient with connection pooling configured.

    Created once at lifespan startup and stored in app.state.http_client; never
    instantiated per-request. Redirect handling is chosen per call by the
    forwarder, so the client default stays off.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY_S,
        ),
        timeout=httpx.Timeout(backend.timeout_s),
        follow_redirects=False,
    )


# ─── Shared forwarding path ───────────────────────────────────────────────────


async def forward_request(
    request: Request,
    path: str,
    inject_auth: bool = True,
    redirect_mode: RedirectMode = RedirectMode.FOLLOW,
) -> Response:
    """Acquire a credential (if asked to), apply the credential policy, forward."""
    config: Config = request.app.state.config
    forwarder: Forwarder = request.app.state.forwarder

    credential = None
    if inject_auth:
        session = await resolve_session(request)
        credential = await acquire_credential(
            request.app.state.identity_provider,
            session,
            config.auth.token_template,
        )
        if credential is None and config.auth.fail_closed:
            logger.warning(
                "credential_required",
                method=request.method,
                path=request.url.path,
                template=config.auth.token_template,
            )
            return build_credential_required_response()

    return await forwarder.forward(
        request, path, credential=credential, redirect_mode=redirect_mode
    )


# ─── Handlers ─────────────────────────────────────────────────────────────────


async def proxy_handler(request: Request) -> Response:
    """Generic mount: forward the sub-path, still percent-encoded, to the backend."""
    mount_path = request.app.state.config.proxy.mount_path
    return await forward_request(request, raw_subpath(request, mount_path))


async def preflight_handler(request: Request) -> Response:
    return build_preflight_response()


def make_fixed_route_handler(route: FixedRoute) -> Handler:
    """Build the handler for one configured fixed-destination route."""
    redirect_mode = RedirectMode(route.redirect)

    async def fixed_route_handler(request: Request) -> Response:
        for name in route.required_query:
            if not request.query_params.get(name):
                logger.info("missing_query_parameter", path=route.path, parameter=name)
                return build_missing_query_response(name, route.missing_query_error)
        return await forward_request(
            request,
            route.target,
            inject_auth=route.inject_auth,
            redirect_mode=redirect_mode,
        )

    return fixed_route_handler


# ─── Router ───────────────────────────────────────────────────────────────────


def build_proxy_router(config: Config) -> APIRouter:
    """Register the generic mount and every fixed route from ``config``."""
    router = APIRouter(tags=["proxy"])
    mount = config.proxy.mount_path

    for route_path in (mount, f"{mount}/{{path:path}}"):
        router.add_api_route(
            route_path,
            proxy_handler,
            methods=list(FORWARDED_METHODS),
            include_in_schema=False,
        )
        router.add_api_route(
            route_path, preflight_handler, methods=["OPTIONS"], include_in_schema=False
        )

    for route in config.routes:
        router.add_api_route(
            route.path,
            make_fixed_route_handler(route),
            methods=route.methods,
            name=f"fixed:{route.path}",
            include_in_schema=False,
        )
        router.add_api_route(
            route.path, preflight_handler, methods=["OPTIONS"], include_in_schema=False
        )
        logger.debug(
            "fixed_route_registered",
            path=route.path,
            target=route.target,
            methods=route.methods,
            redirect=route.redirect,
            inject_auth=route.inject_auth,
        )

    return router
